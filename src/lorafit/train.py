"""Trainer loop + the adapter training job.

Design rules:
1) **Adapter only**. Base weights never receive gradients; the optimizer is
   built over adapter tensors and nothing else.
2) **One epoch = one engine call**. The split is computed here, the engine runs
   the train pass and the (optional) eval pass and reports every batch back.
3) **No retries**. An epoch that fails is surfaced with the batches it already
   reported; what to do next is the caller's call.
4) **Append-only metrics**. Every batch and every epoch is a JSONL row, so a
   crash still leaves a usable record.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from tqdm import tqdm

from lorafit.config import Config
from lorafit.data.window import TokenDataset, epoch_split
from lorafit.engine import ContextHandle, Engine, LRSchedule
from lorafit.errors import Cancelled, EngineError, EpochFailed
from lorafit.types import BatchProgress, CancelToken, EpochResult
from lorafit.utils.io import MetricsWriter, add_file_logging, create_run_dir

logger = logging.getLogger(__name__)


def format_progress(p: BatchProgress) -> str:
    """One progress line: `[TRAIN] batch 3/19 | loss 2.1234 | 4.20 batch/s | 0.7s`."""
    return (
        f"[{p.phase}] batch {p.ibatch + 1}/{p.ibatch_max} | loss {p.loss:.4f} | "
        f"{p.batches_per_s:.2f} batch/s | {p.elapsed_s:.1f}s"
    )


def run_epoch(
    engine: Engine,
    ctx: ContextHandle,
    dataset: TokenDataset,
    *,
    epoch: int,
    schedule: LRSchedule,
    train_fraction: float = 0.95,
    cancel: CancelToken | None = None,
    on_batch: Callable[[BatchProgress], None] | None = None,
) -> EpochResult:
    """Run exactly one epoch over a windowed dataset.

    :param Engine engine: Engine facade (optimizer already initialized).
    :param ctx: Training context with the adapter applied.
    :param TokenDataset dataset: Windowed examples.
    :param int epoch: Zero-based epoch index.
    :param LRSchedule schedule: Learning-rate schedule (for logging + result).
    :param float train_fraction: Fraction of examples used for training.
    :param cancel: Optional cancellation token, checked before every batch.
    :param on_batch: Optional per-batch observer.
    :raises Cancelled: If the token trips mid-epoch.
    :raises EpochFailed: If the engine fails mid-epoch.
    :return EpochResult: Aggregate metrics.
    """
    split = epoch_split(dataset.ndata, train_fraction=train_fraction)
    lr = schedule.lr(epoch)
    eval_desc = f"{split.n_eval} examples" if split.has_eval else "skipped"
    logger.info("=== Epoch %d/%d ===", epoch + 1, schedule.epochs)
    logger.info("Train: %d examples | Eval: %s | LR: %.3e", split.split_index, eval_desc, lr)

    reported: list[BatchProgress] = []

    def _observe(p: BatchProgress) -> None:
        if cancel is not None and cancel.cancelled:
            raise Cancelled(f"Training cancelled during epoch {epoch + 1}")
        reported.append(p)
        logger.info(format_progress(p))
        if on_batch is not None:
            on_batch(p)

    if cancel is not None and cancel.cancelled:
        raise Cancelled(f"Training cancelled before epoch {epoch + 1}")

    t0 = time.perf_counter()
    try:
        train_res, eval_res = engine.opt_epoch(ctx, dataset, split.split_index, epoch=epoch, on_batch=_observe)
    except EngineError as exc:
        raise EpochFailed(f"Epoch {epoch + 1} failed: {exc}", epoch=epoch, reported=reported) from exc

    result = EpochResult(
        index=int(epoch),
        ndata=dataset.ndata,
        split_index=split.split_index,
        learning_rate=lr,
        train_loss=float(train_res.loss),
        eval_loss=float(eval_res.loss) if eval_res is not None else None,
        epoch_time_s=time.perf_counter() - t0,
        batches=reported,
    )
    logger.info(result.summary())
    return result


def epoch_row(result: EpochResult) -> dict[str, float | int | None]:
    return {
        "epoch": int(result.index + 1),
        "train_loss": float(result.train_loss),
        "eval_loss": result.eval_loss,
        "lr": float(result.learning_rate),
        "epoch_time_s": float(result.epoch_time_s),
        "ndata": int(result.ndata),
        "split_index": int(result.split_index),
    }


def _load_text(cfg: Config) -> str:
    if cfg.train.text is not None:
        return cfg.train.text
    if cfg.train.text_file is None:
        raise ValueError("Set train.text_file (or train.text) to the training text")
    return Path(cfg.train.text_file).read_text(encoding="utf-8")


def run(
    cfg: Config,
    *,
    config_path: str | None = None,
    engine: Engine | None = None,
    cancel: CancelToken | None = None,
) -> Path:
    """Run an adapter training job and return the run directory.

    Layout of the run directory:

        config_resolved.json
        metrics.jsonl            batch + epoch rows (and a crash row on failure)
        train.log
        adapters/epoch_<n>/      when train.save_every_epoch
        adapter/                 final adapter (unless train.output_adapter)

    :param Config cfg: Validated config.
    :param config_path: Optional path to the original YAML config.
    :param engine: Engine to use (defaults to the JAX reference engine).
    :param cancel: Optional cancellation token.
    :return Path: The run directory.
    """
    from lorafit.session import Session

    if cfg.model.path is None:
        raise ValueError("model.path must point to a model directory")

    run_dir = create_run_dir(cfg, config_path=config_path)
    if cfg.logging.log_file:
        add_file_logging(run_dir / cfg.logging.log_file, level=cfg.logging.level)
    logger.info("Run dir: %s", run_dir)

    text = _load_text(cfg)
    if engine is None:
        from lorafit.model import JaxEngine

        engine = JaxEngine(seed=cfg.train.seed)

    epoch = -1
    with MetricsWriter(run_dir / cfg.logging.metrics_file) as mw:
        try:
            with Session(engine, cfg) as session:
                info = session.load_model(cfg.model.path, n_ctx=cfg.train.n_ctx, training=True)
                logger.info("Loaded model:\n%s", info.summary())
                if cfg.adapter.init_path:
                    session.load_adapter(cfg.adapter.init_path)
                else:
                    session.create_adapter()
                session.set_training_data(text)
                session.init_training()

                for epoch in tqdm(range(cfg.train.epochs), desc="train", dynamic_ncols=True):

                    def _row(p: BatchProgress, _epoch: int = epoch) -> None:
                        mw.write({"epoch": _epoch + 1, **p.to_row()})

                    result = session.train_epoch(epoch, cancel=cancel, on_batch=_row)
                    mw.write(epoch_row(result))
                    if cfg.train.save_every_epoch:
                        session.save_adapter(run_dir / "adapters" / f"epoch_{epoch + 1}")

                final = Path(cfg.train.output_adapter) if cfg.train.output_adapter else run_dir / "adapter"
                session.save_adapter(final)
                logger.info("Saved adapter: %s (%d metric rows)", final, mw.n_rows)
        except Exception as exc:
            mw.crash(exc, epoch=epoch + 1)
            logger.exception("Training crashed")
            raise

    return run_dir
