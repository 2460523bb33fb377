"""CLI entrypoints for lorafit.

Invoked via ``pyproject.toml`` entrypoints::

    lorafit init-model models/tiny
    lorafit train <config.yaml> ...
    lorafit generate models/tiny --prompt "Hello"

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from lorafit.cli.main import cli
