"""Run directories, console/file logging and JSONL metrics.

A training run leaves behind:

    <run_dir>/config_resolved.json    the validated config
    <run_dir>/config_original.yaml    the YAML it came from (if any)
    <run_dir>/metrics.jsonl           append-only, one JSON object per line
    <run_dir>/train.log               everything the root logger saw

Generation runs only use the console half of this module.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

from lorafit.config import Config

# Third-party loggers that only reach the console at WARNING and above
_QUIET_BELOW_WARNING = ("orbax", "jax", "jaxlib", "absl", "transformers")

_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class _ConsoleNoiseFilter(logging.Filter):
    """Keep JAX/Orbax chatter off the console unless it is a warning."""

    def filter(self, record: logging.LogRecord) -> bool:
        top = record.name.split(".", 1)[0]
        if top in _QUIET_BELOW_WARNING:
            return record.levelno >= logging.WARNING
        return True


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    if use_rich:
        handler: logging.Handler = RichHandler(show_time=True, show_level=True, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Replace the root logger's handlers with a single console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: Rich console output instead of plain lines.
    """
    numeric_level = _level(level)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: Path, *, level: str) -> None:
    """Also write logs to `path` (once per path; repeated calls are no-ops).

    :param Path path: Log file path.
    :param str level: Log level name.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    target = os.path.abspath(path)
    if any(isinstance(h, logging.FileHandler) and h.baseFilename == target for h in root.handlers):
        return
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(_level(level))
    handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    root.addHandler(handler)


def create_run_dir(cfg: Config, *, config_path: str | Path | None = None) -> Path:
    """Create a fresh run directory and snapshot the config into it.

    With `logging.run_dir` unset the directory is runs/<project>/<stamp>_<config stem>.
    An explicit `logging.run_dir` must not exist yet.

    :param Config cfg: Validated config.
    :param config_path: Original YAML, copied next to the resolved snapshot.
    :raises FileExistsError: If the configured directory already exists.
    :return Path: The new run directory.
    """
    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        if run_dir.exists():
            raise FileExistsError(
                f"Run dir already exists: {run_dir}. Refusing to clobber. Set logging.run_dir to a new path."
            )
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
    run_dir.mkdir(parents=True, exist_ok=False)

    (run_dir / "config_resolved.json").write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True))
    if config_path is not None and Path(config_path).exists():
        (run_dir / "config_original.yaml").write_text(Path(config_path).read_text())
    return run_dir


class MetricsWriter:
    """Append-only JSONL metrics, one row per line, flushed on every write.

    Rows written by the trainer:

        {"epoch", "phase", "batch", "batches", "loss", "batches_per_s", "elapsed_s"}
        {"epoch", "train_loss", "eval_loss", "lr", "epoch_time_s", "ndata", "split_index"}
        {"crash": true, "epoch", "error"}
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", encoding="utf-8")
        self.n_rows = 0

    def write(self, row: dict[str, Any]) -> None:
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()
        self.n_rows += 1

    def crash(self, exc: BaseException, **fields: Any) -> None:
        """Write the row that marks a run as crashed.

        :param BaseException exc: The exception that ended the run.
        :param fields: Extra context (epoch, ...).
        """
        self.write({"crash": True, **fields, "error": f"{type(exc).__name__}: {exc}"})

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
