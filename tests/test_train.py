"""Trainer loop, LR schedule and the training job runner."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

from lorafit.data.window import TokenDataset, build_dataset
from lorafit.engine import ContextParams, LRSchedule, ModelParams
from lorafit.errors import BackendNotInitialized, Cancelled, EpochFailed, ModelLoadFailed
from lorafit.train import epoch_row, format_progress, run, run_epoch
from lorafit.types import BatchProgress, CancelToken
from tests.helpers.fake_engine import FakeEngine


def _ctx(engine: FakeEngine, n_ctx: int = 8):
    model = engine.load_model("m", ModelParams())
    return engine.create_context(model, ContextParams.for_training(n_ctx, 2))


def _read_rows(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


# ------------------------------ schedule -----------------------------------


def test_lr_schedule_decays_exponentially_to_minimum() -> None:
    s = LRSchedule(lr0=1e-3, lr_min=1e-4, epochs=4)
    assert s.lr(0) == pytest.approx(1e-3)
    assert s.lr(2) == pytest.approx(1e-3 * (0.1**0.5))
    assert s.lr(4) == pytest.approx(1e-4)
    assert s.lr(10) == pytest.approx(1e-4)
    lrs = [s.lr(e) for e in range(4)]
    assert lrs == sorted(lrs, reverse=True)


@pytest.mark.parametrize("lr_min", [0.0, -1.0, 1e-3, 5e-3])
def test_lr_schedule_constant_when_minimum_is_not_below_start(lr_min: float) -> None:
    s = LRSchedule(lr0=1e-3, lr_min=lr_min, epochs=3)
    assert [s.lr(e) for e in range(5)] == [pytest.approx(1e-3)] * 5


# ------------------------------ progress -----------------------------------


def test_format_progress() -> None:
    line = format_progress(BatchProgress(True, 2, 19, 2.25, 0.5))
    assert line == "[TRAIN] batch 3/19 | loss 2.2500 | 6.00 batch/s | 0.5s"
    assert format_progress(BatchProgress(False, 0, 1, 1.0, 0.0)).startswith("[EVAL] batch 1/1")


def test_batch_progress_row() -> None:
    row = BatchProgress(False, 1, 4, 3.5, 2.0).to_row()
    assert row == {"phase": "eval", "batch": 2, "batches": 4, "loss": 3.5, "batches_per_s": 1.0, "elapsed_s": 2.0}


# ------------------------------ run_epoch ----------------------------------


def test_run_epoch_reports_every_batch_and_eval(caplog) -> None:
    engine = FakeEngine()
    ctx = _ctx(engine)
    ds = build_dataset(list(range(60)), 8)  # stride 4 -> 13 windows
    seen: list[BatchProgress] = []

    caplog.set_level(logging.INFO, logger="lorafit")
    result = run_epoch(
        engine, ctx, ds, epoch=1, schedule=LRSchedule(1e-3, 1e-4, 3), train_fraction=0.8, on_batch=seen.append
    )

    assert ds.ndata == 13
    assert result.split_index == 10
    assert engine.epochs == [(1, 10)]
    assert [p.train for p in seen] == [True] * 10 + [False] * 3
    assert result.batches == seen
    assert result.learning_rate == pytest.approx(LRSchedule(1e-3, 1e-4, 3).lr(1))
    assert result.eval_loss == pytest.approx(2.5)
    assert "=== Epoch 2/3 ===" in caplog.text
    assert "Eval: 3 examples" in caplog.text
    assert "[TRAIN] batch 10/10" in caplog.text


def test_run_epoch_single_example_skips_eval(caplog) -> None:
    engine = FakeEngine()
    ctx = _ctx(engine)
    # windowing always yields >= 2 examples; a hand-built single window skips eval
    ds = TokenDataset(examples=np.arange(9).reshape(1, 9), n_ctx=8, stride=4, n_source_tokens=9, n_padded_tokens=9)
    caplog.set_level(logging.INFO, logger="lorafit")

    result = run_epoch(engine, ctx, ds, epoch=0, schedule=LRSchedule(1e-3, 1e-4, 1))

    assert ds.ndata == 1
    assert result.eval_loss is None
    assert not result.has_eval
    assert "Eval: skipped" in caplog.text
    assert "Eval loss" not in result.summary()


def test_run_epoch_failure_keeps_reported_batches() -> None:
    engine = FakeEngine(fail_epoch_at_batch=3)
    ctx = _ctx(engine)
    ds = build_dataset(list(range(60)), 8)

    with pytest.raises(EpochFailed) as info:
        run_epoch(engine, ctx, ds, epoch=0, schedule=LRSchedule(1e-3, 1e-4, 1))

    assert info.value.epoch == 0
    assert [p.ibatch for p in info.value.reported] == [0, 1, 2]
    assert "NaN loss" in str(info.value)


def test_run_epoch_cancellation() -> None:
    engine = FakeEngine()
    ctx = _ctx(engine)
    ds = build_dataset(list(range(60)), 8)
    token = CancelToken()

    def _cancel_after_two(p: BatchProgress) -> None:
        if p.ibatch == 1:
            token.cancel()

    with pytest.raises(Cancelled):
        run_epoch(engine, ctx, ds, epoch=0, schedule=LRSchedule(1e-3, 1e-4, 1), cancel=token, on_batch=_cancel_after_two)

    token2 = CancelToken()
    token2.cancel()
    with pytest.raises(Cancelled, match="before epoch 1"):
        run_epoch(engine, ctx, ds, epoch=0, schedule=LRSchedule(1e-3, 1e-4, 1), cancel=token2)


def test_epoch_row() -> None:
    engine = FakeEngine()
    result = run_epoch(engine, _ctx(engine), build_dataset(list(range(30)), 8), epoch=0, schedule=LRSchedule(1e-3, 0.0, 1))
    row = epoch_row(result)
    assert row["epoch"] == 1
    assert row["lr"] == pytest.approx(1e-3)
    assert set(row) == {"epoch", "train_loss", "eval_loss", "lr", "epoch_time_s", "ndata", "split_index"}


# ------------------------------ job runner ---------------------------------


def test_run_writes_metrics_and_adapters(tiny_cfg_factory, tmp_path: Path) -> None:
    cfg, config_path = tiny_cfg_factory(tmp_path, epochs=2, model_path="fake-model")
    engine = FakeEngine()

    run_dir = run(cfg, config_path=str(config_path), engine=engine)

    assert run_dir == tmp_path / "run"
    assert (run_dir / "config_resolved.json").exists()
    assert (run_dir / "config_original.yaml").exists()
    rows = _read_rows(run_dir / "metrics.jsonl")
    epoch_rows = [r for r in rows if "train_loss" in r]
    batch_rows = [r for r in rows if "phase" in r]
    assert [r["epoch"] for r in epoch_rows] == [1, 2]
    assert {r["phase"] for r in batch_rows} == {"train", "eval"}
    assert engine.saved == [
        str(run_dir / "adapters" / "epoch_1"),
        str(run_dir / "adapters" / "epoch_2"),
        str(run_dir / "adapter"),
    ]
    # schedule built from config
    assert engine.opt_params[0].schedule.epochs == 2
    assert "backend_free" in engine.calls


def test_run_crash_writes_crash_row(tiny_cfg_factory, tmp_path: Path) -> None:
    cfg, config_path = tiny_cfg_factory(tmp_path, model_path="fake-model")
    engine = FakeEngine(fail_epoch_at_batch=1)

    with pytest.raises(EpochFailed):
        run(cfg, config_path=str(config_path), engine=engine)

    rows = _read_rows(tmp_path / "run" / "metrics.jsonl")
    assert rows[-1]["crash"] is True
    assert rows[-1]["epoch"] == 1
    assert rows[-1]["error"].startswith("EpochFailed:")
    assert engine.saved == []


def test_run_model_load_failure(tiny_cfg_factory, tmp_path: Path) -> None:
    cfg, _ = tiny_cfg_factory(tmp_path, model_path="fake-model")
    with pytest.raises(ModelLoadFailed):
        run(cfg, engine=FakeEngine(fail_load=True))
    rows = _read_rows(tmp_path / "run" / "metrics.jsonl")
    assert rows == [{"crash": True, "epoch": 0, "error": rows[0]["error"]}]


def test_run_backend_failure_writes_crash_row(tiny_cfg_factory, tmp_path: Path) -> None:
    cfg, _ = tiny_cfg_factory(tmp_path, model_path="fake-model")
    engine = FakeEngine(fail_backend=True)
    with pytest.raises(BackendNotInitialized):
        run(cfg, engine=engine)
    rows = _read_rows(tmp_path / "run" / "metrics.jsonl")
    assert len(rows) == 1
    assert rows[0]["crash"] is True
    assert rows[0]["epoch"] == 0
    assert rows[0]["error"].startswith("BackendNotInitialized")
    assert engine.calls == ["backend_init"]


def test_run_refuses_existing_run_dir(tiny_cfg_factory, tmp_path: Path) -> None:
    cfg, _ = tiny_cfg_factory(tmp_path, model_path="fake-model")
    (tmp_path / "run").mkdir()
    with pytest.raises(FileExistsError):
        run(cfg, engine=FakeEngine())


def test_run_requires_text(tiny_cfg_factory, tmp_path: Path) -> None:
    cfg, _ = tiny_cfg_factory(tmp_path, model_path="fake-model")
    cfg = replace(cfg, train=replace(cfg.train, text=None, text_file=None))
    with pytest.raises(ValueError, match="train.text_file"):
        run(cfg, engine=FakeEngine())


def test_run_reads_text_file_and_output_adapter(tiny_cfg_factory, tmp_path: Path) -> None:
    text_file = tmp_path / "corpus.txt"
    text_file.write_text("a corpus on disk. " * 10, encoding="utf-8")
    cfg, _ = tiny_cfg_factory(tmp_path, model_path="fake-model")
    cfg = replace(
        cfg,
        train=replace(
            cfg.train, text=None, text_file=str(text_file), save_every_epoch=False, output_adapter=str(tmp_path / "out")
        ),
    )
    engine = FakeEngine()
    run(cfg, engine=engine)
    assert engine.saved == [str(tmp_path / "out")]
