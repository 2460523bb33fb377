"""Error taxonomy.

Every failure that can cross the session boundary is a `LorafitError` subclass
with a stable `kind` string. Callers branch on the class (or `kind`), never on
message text.

Nothing in lorafit retries. A retry is caller policy.
"""

from __future__ import annotations

from typing import Any


class LorafitError(RuntimeError):
    """Base class for all session-boundary errors."""

    kind: str = "LorafitError"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)

    @property
    def message(self) -> str:
        return str(self)


class EngineError(RuntimeError):
    """Raised by Engine implementations when a facade call fails.

    `decode` is the exception: it returns a nonzero status instead.
    The session maps EngineError onto the taxonomy below.
    """


# ------------------------------ Lifecycle ----------------------------------


class BackendNotInitialized(LorafitError):
    kind = "BackendNotInitialized"


class ModelNotLoaded(LorafitError):
    kind = "ModelNotLoaded"


class ModelLoadFailed(LorafitError):
    kind = "ModelLoadFailed"


class ContextCreateFailed(LorafitError):
    kind = "ContextCreateFailed"


# ------------------------------ Generation ---------------------------------


class EmptyPrompt(LorafitError):
    kind = "EmptyPrompt"


class PromptTooLong(LorafitError):
    kind = "PromptTooLong"


class DecodeFailure(LorafitError):
    """Engine decode returned nonzero. Terminal for the session.

    `partial_text` is whatever was generated (and flushed) before the failure.
    """

    kind = "DecodeFailure"

    def __init__(
        self,
        message: str | None = None,
        *,
        stage: str = "generate",
        index: int = 0,
        partial_text: str = "",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.index = int(index)
        self.partial_text = partial_text


class Cancelled(LorafitError):
    kind = "Cancelled"


# ------------------------------ Adapters -----------------------------------


class AdapterCreateFailed(LorafitError):
    kind = "AdapterCreateFailed"


class AdapterLoadFailed(LorafitError):
    kind = "AdapterLoadFailed"


class AdapterApplyFailed(LorafitError):
    kind = "AdapterApplyFailed"


class AdapterSaveFailed(LorafitError):
    kind = "AdapterSaveFailed"


class AdapterNotLoaded(LorafitError):
    kind = "AdapterNotLoaded"


class NoAdapterToSave(AdapterSaveFailed):
    kind = "NoAdapterToSave"


# ------------------------------ Training -----------------------------------


class TrainingTextTooShort(LorafitError):
    kind = "TrainingTextTooShort"


class TrainingNotInitialized(LorafitError):
    kind = "TrainingNotInitialized"


class EpochFailed(LorafitError):
    """An epoch died mid-way. `reported` holds the per-batch rows already emitted."""

    kind = "EpochFailed"

    def __init__(self, message: str | None = None, *, epoch: int = 0, reported: list[Any] | None = None) -> None:
        super().__init__(message)
        self.epoch = int(epoch)
        self.reported = list(reported or [])
