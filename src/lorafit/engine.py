"""Engine facade.

This file is the *only* contract between orchestration (generation sessions,
trainer loop) and whatever actually runs the model. Orchestration code never
tokenizes, decodes, samples or steps an optimizer by itself; it asks the engine.

Handles (model, context, adapter, sampler) are opaque to the orchestration
layer. They are created and destroyed only through the engine, and the
`Session` object owns them.

Failure conventions:
- `decode` returns 0 on success and nonzero on failure (it is on the hot path
  and the caller decides how fatal a failure is).
- every other call raises `EngineError` on failure.

`lorafit.model.JaxEngine` is the reference implementation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from lorafit.data.window import TokenDataset
from lorafit.sampling import SamplingStrategy
from lorafit.types import Batch, BatchProgress, Token

ModelHandle = Any
ContextHandle = Any
AdapterHandle = Any


@dataclass(frozen=True)
class ModelParams:
    """Parameters for loading a model."""

    n_gpu_layers: int = 0


@dataclass(frozen=True)
class ContextParams:
    """Parameters for creating a decode/training context.

    Inference contexts use n_batch=512, n_ubatch=256. Training contexts use
    n_batch = n_ubatch = n_ctx so a whole window fits in one step.
    """

    n_ctx: int
    n_batch: int
    n_ubatch: int
    n_threads: int
    training: bool = False

    @staticmethod
    def for_inference(n_ctx: int, n_threads: int, *, n_batch: int = 512, n_ubatch: int = 256) -> ContextParams:
        return ContextParams(
            n_ctx=int(n_ctx),
            n_batch=int(n_batch),
            n_ubatch=int(n_ubatch),
            n_threads=int(n_threads),
            training=False,
        )

    @staticmethod
    def for_training(n_ctx: int, n_threads: int) -> ContextParams:
        return ContextParams(
            n_ctx=int(n_ctx),
            n_batch=int(n_ctx),
            n_ubatch=int(n_ctx),
            n_threads=int(n_threads),
            training=True,
        )


@dataclass(frozen=True)
class LRSchedule:
    """Per-epoch learning rate.

    lr(e) = lr0 * (lr_min / lr0) ** (e / epochs) for e < epochs, lr_min after.
    lr_min <= 0 (or >= lr0) keeps the rate constant at lr0.
    """

    lr0: float
    lr_min: float
    epochs: int

    def lr(self, epoch: int) -> float:
        """Learning rate for a zero-based epoch index.

        :param int epoch: Epoch index.
        :return float: Learning rate.
        """
        if self.lr_min <= 0.0 or self.lr_min >= self.lr0 or self.epochs <= 0:
            return float(self.lr0)
        if epoch >= self.epochs:
            return float(self.lr_min)
        return float(self.lr0 * (self.lr_min / self.lr0) ** (max(0, epoch) / self.epochs))


@dataclass(frozen=True)
class OptParams:
    """Optimizer setup. Only adapter tensors are ever trainable."""

    schedule: LRSchedule
    weight_decay: float = 0.0
    seed: int = 0


@dataclass(frozen=True)
class OptResult:
    """Aggregate result of one train or eval pass."""

    loss: float
    n_batches: int


@dataclass(frozen=True)
class ModelInfo:
    """Summary of a loaded model."""

    description: str
    size_bytes: int
    n_params: int
    n_threads: int
    n_ctx: int
    device: str

    def summary(self) -> str:
        return (
            f"Model: {self.description}\n"
            f"Size: {self.size_bytes / 1e6:.2f} MB\n"
            f"Params: {self.n_params:,}\n"
            f"Threads: {self.n_threads}\n"
            f"Context: {self.n_ctx}\n"
            f"Device: {self.device}"
        )


class Sampler(Protocol):
    """A constructed sampler chain. Must be freed exactly once."""

    def free(self) -> None: ...


BatchCallback = Callable[[BatchProgress], None]


class Engine(Protocol):
    """Facade over the model runtime."""

    # -- backend / model / context lifecycle --

    def backend_init(self) -> None: ...

    def backend_free(self) -> None: ...

    def load_model(self, path: str, params: ModelParams) -> ModelHandle: ...

    def free_model(self, model: ModelHandle) -> None: ...

    def create_context(self, model: ModelHandle, params: ContextParams) -> ContextHandle: ...

    def free_context(self, ctx: ContextHandle) -> None: ...

    def describe(self, model: ModelHandle, ctx: ContextHandle) -> ModelInfo: ...

    # -- context queries --

    def n_ctx(self, ctx: ContextHandle) -> int: ...

    def n_batch(self, ctx: ContextHandle) -> int: ...

    def memory_clear(self, ctx: ContextHandle) -> None: ...

    # -- tokens --

    def tokenize(
        self, ctx: ContextHandle, text: str, *, add_bos: bool, parse_special: bool = False
    ) -> list[Token]: ...

    def decode(self, ctx: ContextHandle, batch: Batch) -> int: ...

    def token_to_piece(self, ctx: ContextHandle, token: Token) -> bytes: ...

    def is_eog(self, ctx: ContextHandle, token: Token) -> bool: ...

    # -- sampling --

    def build_sampler(self, strategy: SamplingStrategy, *, seed: int) -> Sampler: ...

    def sample(self, sampler: Sampler, ctx: ContextHandle) -> Token: ...

    # -- adapters --

    def create_adapter(
        self, model: ModelHandle, *, rank: int, alpha: float, skip_layers: int
    ) -> AdapterHandle: ...

    def load_adapter(self, model: ModelHandle, path: str) -> AdapterHandle: ...

    def apply_adapter(self, ctx: ContextHandle, adapter: AdapterHandle, scale: float) -> None: ...

    def remove_adapter(self, ctx: ContextHandle) -> None: ...

    def free_adapter(self, adapter: AdapterHandle) -> None: ...

    def save_adapter(self, adapter: AdapterHandle, path: str) -> None: ...

    # -- training --

    def opt_init(self, ctx: ContextHandle, model: ModelHandle, params: OptParams) -> None: ...

    def opt_epoch(
        self,
        ctx: ContextHandle,
        dataset: TokenDataset,
        split_index: int,
        *,
        epoch: int,
        on_batch: BatchCallback,
    ) -> tuple[OptResult, OptResult | None]: ...
