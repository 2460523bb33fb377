"""Test session configuration."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

# CPU only, and before anything imports JAX.
os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

import pytest

from lorafit.config import Config
from lorafit.session import Session
from tests.helpers.config_factories import make_tiny_cfg
from tests.helpers.fake_engine import FakeEngine


@pytest.fixture
def tiny_cfg_factory() -> Callable[..., tuple[Config, Path]]:
    """Expose the shared tiny config factory."""
    return make_tiny_cfg


@pytest.fixture
def tiny_cfg(tmp_path: Path) -> tuple[Config, Path]:
    return make_tiny_cfg(tmp_path)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def session(fake_engine: FakeEngine):
    """A Session over the fake engine with a model loaded (ctx 64, batch 512)."""
    with Session(fake_engine) as s:
        s.load_model("fake-model", n_threads=2, n_ctx=64)
        yield s
