"""Shared config builders for session and training tests."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from lorafit.config import Config, load_config

DEFAULT_TRAIN_TEXT = "hello from lorafit. " * 8


def tiny_config_path() -> Path:
    return Path(__file__).resolve().parents[2] / "configs" / "tiny.yaml"


def make_tiny_cfg(
    tmp_path: Path,
    *,
    run_subdir: str = "run",
    text: str = DEFAULT_TRAIN_TEXT,
    n_ctx: int = 16,
    epochs: int = 1,
    model_path: str | None = None,
) -> tuple[Config, Path]:
    """Build a CPU-sized config from configs/tiny.yaml for fast tests.

    :param Path tmp_path: Temporary directory provided by pytest.
    :param str run_subdir: Name of the run subdirectory under tmp_path.
    :param str text: Inline training text.
    :param int n_ctx: Training context size.
    :param int epochs: Number of epochs.
    :param model_path: Model directory (defaults to tmp_path / "model").
    :return tuple[Config, Path]: (cfg, config_path).
    """
    config_src = tiny_config_path()
    cfg = load_config(str(config_src))
    cfg = replace(
        cfg,
        model=replace(
            cfg.model,
            path=model_path or str(tmp_path / "model"),
            n_threads=2,
            n_ctx=64,
            d_model=16,
        ),
        adapter=replace(cfg.adapter, rank=2),
        generate=replace(cfg.generate, max_tokens=8, stream=False),
        train=replace(
            cfg.train,
            text=text,
            text_file=None,
            n_ctx=n_ctx,
            epochs=epochs,
            save_every_epoch=True,
        ),
        logging=replace(
            cfg.logging,
            run_dir=str(tmp_path / run_subdir),
            console_use_rich=False,
        ),
    )
    return cfg, config_src
