"""Config loading, overrides, variables, validation and default resolution."""

from __future__ import annotations

import warnings
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest

from lorafit.config import (
    DEFAULT_STOP_TOKEN_MARKERS,
    Config,
    apply_overrides,
    load_config,
    resolve_max_tokens,
    resolve_n_ctx,
    resolve_n_threads,
    validate_config,
)
from tests.helpers.config_factories import tiny_config_path


def _write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_tiny_config_loads_and_resolves_variables() -> None:
    """The shipped tiny config is valid and `$variables.ctx` keeps its int type."""
    cfg = load_config(tiny_config_path())
    assert cfg.train.n_ctx == 64
    assert isinstance(cfg.train.n_ctx, int)
    assert cfg.generate.stop_strings == ()
    assert cfg.generate.stop_token_markers == DEFAULT_STOP_TOKEN_MARKERS


def test_defaults_match_documented_values() -> None:
    cfg = Config()
    validate_config(cfg)
    assert cfg.generate.temperature == pytest.approx(0.7)
    assert cfg.generate.top_k == 40
    assert cfg.generate.top_p == pytest.approx(0.9)
    assert (cfg.adapter.rank, cfg.adapter.alpha, cfg.adapter.skip_layers) == (8, 16.0, 0)
    assert cfg.train.learning_rate == pytest.approx(1e-4)
    assert cfg.train.lr_min_ratio == pytest.approx(0.1)
    assert cfg.train.train_fraction == pytest.approx(0.95)


def test_overrides_cast_to_field_type(tmp_path: Path) -> None:
    cfg = load_config(
        tiny_config_path(),
        overrides=[
            "train.epochs=3",
            "train.learning_rate=5e-4",
            "train.save_every_epoch=false",
            "generate.stop_strings=User:,###",
            "model.path=/models/x",
        ],
    )
    assert cfg.train.epochs == 3
    assert cfg.train.learning_rate == pytest.approx(5e-4)
    assert cfg.train.save_every_epoch is False
    assert cfg.generate.stop_strings == ("User:", "###")
    assert cfg.model.path == "/models/x"


def test_override_list_literal() -> None:
    cfg = apply_overrides(Config(), ['generate.stop_strings=["\\n\\n", "END"]'])
    assert cfg.generate.stop_strings == ("\n\n", "END")


def test_malformed_or_unknown_override_raises() -> None:
    with pytest.raises(ValueError, match="Expected format"):
        apply_overrides(Config(), ["train.epochs"])
    with pytest.raises(ValueError, match="Unknown config key"):
        apply_overrides(Config(), ["train.steps=3"])


def test_unknown_yaml_key_fails_fast(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "train:\n  epoch: 3\n")
    with pytest.raises(ValueError, match="Unknown config key"):
        load_config(path)


def test_unknown_section_fails_fast(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "optim:\n  lr: 1\n")
    with pytest.raises(ValueError, match="Unknown config section"):
        load_config(path)


def test_variables_interpolate_into_strings(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        """
variables:
  name: demo
  dims:
    ctx: 32
train:
  n_ctx: $variables.dims.ctx
  output_adapter: "adapters/{$variables.name}_ctx${variables.dims.ctx}"
""",
    )
    cfg = load_config(path)
    assert cfg.train.n_ctx == 32
    assert cfg.train.output_adapter == "adapters/demo_ctx32"


def test_variables_missing_reference_raises(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "variables:\n  a: 1\ntrain:\n  epochs: $variables.b\n")
    with pytest.raises(ValueError, match="Unknown variable reference"):
        load_config(path)


def test_variables_circular_reference_raises(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        "variables:\n  a: $variables.b\n  b: $variables.a\ntrain:\n  epochs: $variables.a\n",
    )
    with pytest.raises(ValueError, match="Circular variable reference"):
        load_config(path)


def test_unresolved_variable_pattern_warns(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        "variables:\n  a: x\ntrain:\n  output_adapter: out_$variables.a\n",
    )
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_config(path)
    assert any("unresolved variable-like" in str(w.message) for w in caught)


def test_validation_rejects_invalid_values() -> None:
    """Every validator names the field to fix."""
    cases: list[tuple[Callable[[Config], Config], str]] = [
        (lambda c: replace(c, model=replace(c.model, n_batch=0)), "model.n_batch"),
        (lambda c: replace(c, model=replace(c.model, n_gpu_layers=-1)), "model.n_gpu_layers"),
        (lambda c: replace(c, model=replace(c.model, vocab_size=100)), "model.vocab_size"),
        (lambda c: replace(c, generate=replace(c.generate, top_k=0)), "generate.top_k"),
        (lambda c: replace(c, generate=replace(c.generate, top_p=1.5)), "generate.top_p"),
        (lambda c: replace(c, generate=replace(c.generate, stop_strings=("",))), "stop_strings"),
        (lambda c: replace(c, adapter=replace(c.adapter, rank=0)), "adapter.rank"),
        (lambda c: replace(c, adapter=replace(c.adapter, skip_layers=2)), "adapter.skip_layers"),
        (lambda c: replace(c, train=replace(c.train, epochs=0)), "train.epochs"),
        (lambda c: replace(c, train=replace(c.train, lr_min_ratio=2.0)), "train.lr_min_ratio"),
        (lambda c: replace(c, train=replace(c.train, train_fraction=0.0)), "train.train_fraction"),
        (lambda c: replace(c, train=replace(c.train, text="a", text_file="b.txt")), "at most one"),
        (lambda c: replace(c, tokenizer=replace(c.tokenizer, kind="hf")), "hf_name_or_path"),
        (lambda c: replace(c, tokenizer=replace(c.tokenizer, bos_token="<bos>")), "bos_token"),
        (lambda c: replace(c, logging=replace(c.logging, level="TRACE")), "logging.level"),
    ]
    for mutate, match in cases:
        with pytest.raises(ValueError, match=match):
            validate_config(mutate(Config()))


def test_resolve_n_threads() -> None:
    assert resolve_n_threads(3) == 3
    assert resolve_n_threads(0, cpu_count=8) == 6
    assert resolve_n_threads(-1, cpu_count=3) == 2
    assert resolve_n_threads(0, cpu_count=1) == 2


def test_resolve_n_ctx_and_max_tokens() -> None:
    assert resolve_n_ctx(0, training=False) == 2048
    assert resolve_n_ctx(-5, training=True) == 512
    assert resolve_n_ctx(100, training=True) == 100
    assert resolve_max_tokens(0) == 128
    assert resolve_max_tokens(-1) == 128
    assert resolve_max_tokens(7) == 7


def test_to_dict_round_trips_sections() -> None:
    d = Config().to_dict()
    assert set(d) == {"model", "tokenizer", "generate", "adapter", "train", "logging"}
    assert d["train"]["epochs"] == 1
