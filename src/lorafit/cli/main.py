"""Main CLI entry point.

Defines the Click group and shared utilities.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace

import click

from lorafit._version import __version__
from lorafit.config import Config, apply_overrides, load_config, validate_config

BANNER = f"""
   __                  ____ _  __
  / /___  _________ _/ __/(_)/ /_
 / / __ \\/ ___/ __ `/ /_ / // __/
/ / /_/ / /  / /_/ / __// // /_
/_/\\____/_/   \\__,_/_/  /_/ \\__/

Version: {__version__}
""".strip("\n")


def print_banner() -> None:
    """Print the lorafit banner."""
    click.echo(BANNER)


def load_cli_config(config: str | None, overrides: tuple[str, ...]) -> Config:
    """Load a YAML config (or defaults) and apply dot-path overrides.

    :param config: Optional YAML path.
    :param overrides: Dot-path overrides like train.epochs=3.
    :raises click.ClickException: If the config is invalid.
    :return Config: Validated config.
    """
    try:
        if config is None:
            cfg = apply_overrides(Config(), overrides)
            validate_config(cfg)
            return cfg
        return load_config(config, overrides=list(overrides))
    except (ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(str(exc)) from exc


def with_model_path(cfg: Config, path: str | None) -> Config:
    if path is None:
        return cfg
    return replace(cfg, model=replace(cfg.model, path=path))


@contextmanager
def lorafit_errors() -> Iterator[None]:
    """Turn session-boundary errors into clean CLI failures."""
    from lorafit.errors import LorafitError

    try:
        yield
    except LorafitError as exc:
        raise click.ClickException(f"{exc.kind}: {exc}") from exc


@click.group()
@click.version_option(version=__version__, prog_name="lorafit")
def cli() -> None:
    """lorafit: generation + LoRA adapter fine-tuning on a pluggable engine."""


# Import and register subcommands
from lorafit.cli.init_model import init_model  # noqa: E402

cli.add_command(init_model)

from lorafit.cli.train import train  # noqa: E402

cli.add_command(train)

from lorafit.cli.generate import generate  # noqa: E402

cli.add_command(generate)
