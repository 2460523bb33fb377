"""Core runtime contracts shared between subsystems.

Keep this file small.

- `Batch` is what the scheduler hands to `Engine.decode`.
- `GenerationResult` / `EpochResult` are what sessions hand back to callers.

**Batch contract**

  token:  [n] int32   token ids, in order
  pos:    [n] int32   strictly increasing positions
  logits: [n] bool    which rows the engine must produce output logits for

`n` never exceeds the context's batch limit. Prefill asks for logits only on
the last prompt token; each generation step decodes a single token with logits.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field

import numpy as np

Token = int


@dataclass(frozen=True)
class Batch:
    """One engine decode call worth of tokens."""

    token: np.ndarray
    pos: np.ndarray
    logits: np.ndarray

    def __post_init__(self) -> None:
        n = int(self.token.shape[0])
        if self.pos.shape != (n,) or self.logits.shape != (n,):
            raise ValueError(
                f"Batch fields must share shape ({n},); got pos={self.pos.shape}, logits={self.logits.shape}"
            )

    @property
    def n_tokens(self) -> int:
        return int(self.token.shape[0])

    @staticmethod
    def single(token: Token, pos: int) -> Batch:
        """Batch holding one token that requests logits."""
        return Batch(
            token=np.asarray([token], dtype=np.int32),
            pos=np.asarray([pos], dtype=np.int32),
            logits=np.asarray([True]),
        )


class GenerationState(str, enum.Enum):
    """Generation session state machine: IDLE -> PREFILL -> DECODING -> terminal."""

    IDLE = "idle"
    PREFILL = "prefill"
    DECODING = "decoding"
    COMPLETED = "completed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (
            GenerationState.COMPLETED,
            GenerationState.STOPPED,
            GenerationState.CANCELLED,
            GenerationState.FAILED,
        )


class StopReason(str, enum.Enum):
    """Why a decode loop ended."""

    END_OF_GENERATION = "eog"
    STOP_TOKEN = "stop_token"
    STOP_STRING = "stop_string"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"
    DECODE_FAILURE = "decode_failure"


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one generation call.

    `text` is None for streaming calls: the text went to the sink.
    """

    text: str | None
    state: GenerationState
    stop_reason: StopReason
    n_prompt_tokens: int
    n_generated: int
    stop_match: str | None = None


@dataclass(frozen=True)
class BatchProgress:
    """Per-batch training/eval progress as reported by the engine."""

    train: bool
    ibatch: int
    ibatch_max: int
    loss: float
    elapsed_s: float

    @property
    def phase(self) -> str:
        return "TRAIN" if self.train else "EVAL"

    @property
    def batches_per_s(self) -> float:
        elapsed = self.elapsed_s if self.elapsed_s > 0 else 1.0
        return (self.ibatch + 1) / elapsed

    def to_row(self) -> dict[str, float | int | str]:
        return {
            "phase": self.phase.lower(),
            "batch": int(self.ibatch + 1),
            "batches": int(self.ibatch_max),
            "loss": float(self.loss),
            "batches_per_s": float(self.batches_per_s),
            "elapsed_s": float(self.elapsed_s),
        }


@dataclass(frozen=True)
class EpochResult:
    """End-of-epoch aggregate metrics."""

    index: int
    ndata: int
    split_index: int
    learning_rate: float
    train_loss: float
    eval_loss: float | None
    epoch_time_s: float
    batches: list[BatchProgress] = field(default_factory=list)

    @property
    def has_eval(self) -> bool:
        return self.eval_loss is not None

    def summary(self) -> str:
        out = f"Epoch {self.index + 1} | Train loss: {self.train_loss:.6f}"
        if self.eval_loss is not None:
            out += f" | Eval loss: {self.eval_loss:.6f}"
        out += f" | Time: {int(self.epoch_time_s)}s"
        return out


class CancelToken:
    """Cooperative cancellation flag, checked once per loop iteration.

    Safe to trip from another thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
