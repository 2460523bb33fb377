"""train subcommand: fit a LoRA adapter on a text file."""

from __future__ import annotations

from dataclasses import replace

import click

from lorafit.cli.main import lorafit_errors, print_banner, with_model_path
from lorafit.config import load_config, resolve_n_threads
from lorafit.utils.io import setup_python_logging
from lorafit.utils.xla import configure_cpu_threads


@click.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. train.epochs=3 (repeatable).",
)
@click.option("--model", "model_path", type=click.Path(exists=True), default=None, help="Override model.path.")
@click.option("--text-file", type=click.Path(exists=True, dir_okay=False), default=None, help="Override train.text_file.")
@click.option("--run-dir", type=click.Path(), default=None, help="Override logging.run_dir (must not exist).")
def train(
    config: str,
    overrides: tuple[str, ...],
    model_path: str | None,
    text_file: str | None,
    run_dir: str | None,
) -> None:
    """Train a LoRA adapter.

    CONFIG is the path to a YAML config file.
    """
    print_banner()

    try:
        cfg = load_config(config, overrides=list(overrides))
    except (ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(str(exc)) from exc

    cfg = with_model_path(cfg, model_path)
    if text_file is not None:
        cfg = replace(cfg, train=replace(cfg.train, text_file=text_file, text=None))
    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    # Thread count must be fixed before the JAX backend starts.
    configure_cpu_threads(resolve_n_threads(cfg.model.n_threads))

    from lorafit.train import run

    with lorafit_errors():
        try:
            run_dir_path = run(cfg, config_path=config)
        except (ValueError, FileExistsError) as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"[lorafit] run_dir: {run_dir_path}")
