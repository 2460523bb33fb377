"""init-model subcommand: write a randomly initialized TinyLM to disk."""

from __future__ import annotations

from pathlib import Path

import click

from lorafit.cli.main import load_cli_config
from lorafit.utils.io import setup_python_logging


@click.command("init-model")
@click.argument("out_dir", type=click.Path(file_okay=False))
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML config (model.* and tokenizer.* are used).",
)
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. model.d_model=128 (repeatable).",
)
def init_model(out_dir: str, config: str | None, overrides: tuple[str, ...]) -> None:
    """Create a model directory usable by `generate` and `train`.

    OUT_DIR must not already contain a model.
    """
    cfg = load_cli_config(config, overrides)
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    out = Path(out_dir)
    if out.exists() and any(out.iterdir()):
        raise click.ClickException(f"{out} exists and is not empty")

    # Deferred: pulls in JAX
    from lorafit.model import init_model as _init_model

    try:
        path = _init_model(out, cfg.model, cfg.tokenizer)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"[lorafit] model: {path}")
