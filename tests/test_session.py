"""Session lifecycle, handle ownership and error mapping."""

from __future__ import annotations

import logging
from dataclasses import replace

import pytest

from lorafit.config import Config
from lorafit.engine import LRSchedule
from lorafit.errors import (
    AdapterApplyFailed,
    AdapterCreateFailed,
    AdapterLoadFailed,
    AdapterNotLoaded,
    AdapterSaveFailed,
    BackendNotInitialized,
    ContextCreateFailed,
    LorafitError,
    ModelLoadFailed,
    ModelNotLoaded,
    NoAdapterToSave,
    TrainingNotInitialized,
    TrainingTextTooShort,
)
from lorafit.session import Session
from lorafit.sinks import CallbackSink, QueueSink
from tests.helpers.fake_engine import FakeEngine


def test_load_model_returns_info_and_context_presets(fake_engine: FakeEngine) -> None:
    with Session(fake_engine) as s:
        info = s.load_model("m", n_threads=3, n_ctx=0)
        assert info.n_ctx == 2048
        assert info.n_threads == 3
        assert s.has_model()
        params = s.context_params
        assert (params.n_batch, params.n_ubatch, params.training) == (512, 256, False)

        s.load_model("m", n_threads=3, n_ctx=0, training=True)
        params = s.context_params
        assert params.n_ctx == 512
        assert (params.n_batch, params.n_ubatch, params.training) == (512, 512, True)


def test_reloading_frees_previous_context_and_model(fake_engine: FakeEngine) -> None:
    with Session(fake_engine) as s:
        s.load_model("first", n_ctx=64)
        first_ctx = s._ctx
        s.create_adapter()
        s.load_model("second", n_ctx=64)
        assert first_ctx.freed
        assert not s.has_adapter()
        calls = fake_engine.calls
        assert calls.index("free_context") < calls.index("load_model:second")
        assert calls.index("free_model") < calls.index("load_model:second")


def test_close_releases_in_dependency_order(fake_engine: FakeEngine) -> None:
    s = Session(fake_engine)
    s.init_backend()
    s.load_model("m", n_ctx=64)
    s.create_adapter()
    s.set_training_data("some training text")
    sink = QueueSink()
    s.set_stream_sink(sink)
    s.close()

    tail = [c for c in fake_engine.calls if c in {"remove_adapter", "free_adapter", "free_context", "free_model", "backend_free"}]
    assert tail == ["remove_adapter", "free_adapter", "free_context", "free_model", "backend_free"]
    assert s.dataset is None
    assert not s.has_model()
    assert sink.closed
    # idempotent
    s.close()
    assert fake_engine.calls.count("backend_free") == 1


def test_backend_and_model_errors_are_mapped() -> None:
    with pytest.raises(BackendNotInitialized):
        Session(FakeEngine(fail_backend=True)).init_backend()

    with pytest.raises(BackendNotInitialized):
        Session(FakeEngine()).load_model("m")

    with Session(FakeEngine(fail_load=True)) as s, pytest.raises(ModelLoadFailed) as info:
        s.load_model("missing")
    assert isinstance(info.value.__cause__, Exception)
    assert info.value.kind == "ModelLoadFailed"

    engine = FakeEngine(fail_context=True)
    with Session(engine) as s:
        with pytest.raises(ContextCreateFailed):
            s.load_model("m")
        # the model loaded for the failed context was freed
        assert "free_model" in engine.calls
        assert not s.has_model()

    with Session(FakeEngine()) as s, pytest.raises(ModelLoadFailed, match="model.path"):
        s.load_model()


def test_model_path_falls_back_to_config(fake_engine: FakeEngine) -> None:
    cfg = Config()
    cfg = replace(cfg, model=replace(cfg.model, path="from-config"))
    with Session(fake_engine, cfg) as s:
        s.load_model()
    assert "load_model:from-config" in fake_engine.calls


# ------------------------------ adapters -----------------------------------


def test_adapter_lifecycle(session: Session, fake_engine: FakeEngine) -> None:
    assert not session.has_adapter()
    session.create_adapter(rank=4)
    assert session.has_adapter()
    assert fake_engine.adapters[0].rank == 4

    session.load_adapter("saved/lora")
    assert fake_engine.adapters[0].freed
    assert session._ctx.adapter is fake_engine.adapters[1]

    assert session.remove_adapter() is True
    assert session.remove_adapter() is False
    assert session._ctx.adapter is None


def test_adapter_errors_are_mapped(tmp_path) -> None:
    with Session(FakeEngine()) as s, pytest.raises(ModelNotLoaded):
        s.create_adapter()

    with Session(FakeEngine(fail_create_adapter=True)) as s:
        s.load_model("m", n_ctx=64)
        with pytest.raises(AdapterCreateFailed):
            s.create_adapter()

    with Session(FakeEngine(fail_load_adapter=True)) as s:
        s.load_model("m", n_ctx=64)
        with pytest.raises(AdapterLoadFailed):
            s.load_adapter(tmp_path / "nope")

    engine = FakeEngine(fail_apply=True)
    with Session(engine) as s:
        s.load_model("m", n_ctx=64)
        with pytest.raises(AdapterApplyFailed):
            s.create_adapter()
        assert engine.adapters[0].freed
        assert not s.has_adapter()


def test_save_adapter(session: Session, fake_engine: FakeEngine, tmp_path) -> None:
    with pytest.raises(NoAdapterToSave) as info:
        session.save_adapter(tmp_path / "a")
    assert isinstance(info.value, AdapterSaveFailed)

    session.create_adapter()
    assert session.save_adapter(tmp_path / "a") == tmp_path / "a"
    assert fake_engine.saved == [str(tmp_path / "a")]

    fake_engine.fail_save = True
    with pytest.raises(AdapterSaveFailed):
        session.save_adapter(tmp_path / "b")


# ------------------------------ training -----------------------------------


def test_set_training_data_windows_with_context_size(fake_engine: FakeEngine) -> None:
    with Session(fake_engine) as s:
        s.load_model("m", n_ctx=8, training=True)
        ds = s.set_training_data("abcdefghi")  # BOS + 9 bytes = 10 tokens
        assert ds.n_source_tokens == 10
        assert ds.ndata == 3
        assert s.dataset is ds
        with pytest.raises(TrainingTextTooShort):
            s.set_training_data("")
        assert s.dataset is None


def test_init_training_requires_adapter(session: Session) -> None:
    with pytest.raises(AdapterNotLoaded):
        session.init_training()


def test_init_training_builds_schedule(session: Session, fake_engine: FakeEngine) -> None:
    session.create_adapter()
    schedule = session.init_training(learning_rate=1e-3, epochs=4, weight_decay=0.01)
    assert isinstance(schedule, LRSchedule)
    assert schedule.lr0 == pytest.approx(1e-3)
    assert schedule.lr_min == pytest.approx(1e-4)
    assert schedule.epochs == 4
    params = fake_engine.opt_params[-1]
    assert params.weight_decay == pytest.approx(0.01)
    assert params.schedule is schedule

    fake_engine.fail_opt_init = True
    with pytest.raises(TrainingNotInitialized):
        session.init_training()


def test_train_epoch_requires_data_and_optimizer(session: Session) -> None:
    session.create_adapter()
    with pytest.raises(TrainingNotInitialized, match="training data"):
        session.train_epoch(0)
    session.set_training_data("hello world " * 20)
    with pytest.raises(TrainingNotInitialized, match="Optimizer"):
        session.train_epoch(0)
    session.init_training(epochs=1)
    result = session.train_epoch(0)
    assert result.index == 0
    assert result.train_loss == pytest.approx(2.0)


def test_replacing_adapter_drops_optimizer(session: Session) -> None:
    session.create_adapter()
    session.set_training_data("hello world " * 20)
    session.init_training()
    session.create_adapter()
    with pytest.raises(TrainingNotInitialized, match="Optimizer"):
        session.train_epoch(0)


# ------------------------------ sinks ----------------------------------------


def test_log_sink_receives_session_logs(fake_engine: FakeEngine) -> None:
    lines: list[str] = []
    logger = logging.getLogger("lorafit")
    old = logger.level
    logger.setLevel(logging.INFO)
    try:
        with Session(fake_engine) as s:
            s.set_log_sink(CallbackSink(log=lines.append))
            s.load_model("m", n_ctx=64)
    finally:
        logger.setLevel(old)
    assert any("Model loaded" in line for line in lines)
    # handler detached on close
    assert not any(type(h).__name__ == "SinkLogHandler" for h in logger.handlers)


def test_errors_share_a_base_class() -> None:
    for exc_type in (ModelNotLoaded, AdapterNotLoaded, TrainingNotInitialized, NoAdapterToSave):
        assert issubclass(exc_type, LorafitError)
        assert exc_type().kind == exc_type.__name__
