"""Generation session: prefill -> decode loop -> stop/stream -> completion.

One `GenerationSession` per call. It owns nothing long-lived: the context
belongs to the caller's `Session`, and the sampler chain it builds is freed on
every exit path.

Loop, per generated token:

1. sample
2. end-of-generation token -> COMPLETED (nothing appended)
3. single-token stop rule   -> STOPPED   (nothing appended)
4. append the token's bytes; a stop string overlapping them -> truncate, STOPPED
5. flush whatever is now safe to stream
6. decode the token at the next position (nonzero status -> FAILED)

Running out of `max_tokens` is a normal completion.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace

import numpy as np

from lorafit.config import DEFAULT_MAX_TOKENS, DEFAULT_STOP_TOKEN_MARKERS, GenerateConfig, resolve_max_tokens
from lorafit.engine import ContextHandle, Engine, Sampler
from lorafit.errors import DecodeFailure, EmptyPrompt, PromptTooLong
from lorafit.sampling import select_strategy
from lorafit.stream import StopDetector, StreamEmitter
from lorafit.types import Batch, CancelToken, GenerationResult, GenerationState, StopReason, Token

logger = logging.getLogger(__name__)


# ------------------------------ Batch scheduling ---------------------------


def plan_prefill(tokens: Sequence[Token], n_batch: int, *, start_pos: int = 0) -> list[Batch]:
    """Split prompt tokens into engine-sized batches.

    Positions increase by one from `start_pos`; only the very last token of the
    last batch requests logits.

    :param tokens: Prompt token ids (non-empty).
    :param int n_batch: Engine batch limit (>= 1).
    :param int start_pos: Position of the first token.
    :raises ValueError: If tokens is empty or n_batch < 1.
    :return list[Batch]: Batches in decode order.
    """
    if n_batch < 1:
        raise ValueError(f"n_batch must be >= 1, got {n_batch}")
    if len(tokens) == 0:
        raise ValueError("cannot plan a prefill for zero tokens")

    arr = np.asarray(tokens, dtype=np.int32)
    batches: list[Batch] = []
    for start in range(0, arr.size, n_batch):
        chunk = arr[start : start + n_batch]
        logits = np.zeros(chunk.size, dtype=bool)
        if start + chunk.size == arr.size:
            logits[-1] = True
        batches.append(
            Batch(
                token=chunk,
                pos=np.arange(start_pos + start, start_pos + start + chunk.size, dtype=np.int32),
                logits=logits,
            )
        )
    return batches


def resolve_stop_tokens(engine: Engine, ctx: ContextHandle, markers: Iterable[str]) -> frozenset[Token]:
    """Markers that tokenize (with special-token parsing) to exactly one token.

    :param Engine engine: Engine facade.
    :param ctx: Context handle.
    :param markers: Marker strings such as "<|im_end|>".
    :return frozenset[Token]: Single-token stop ids.
    """
    out: set[Token] = set()
    for marker in markers:
        ids = engine.tokenize(ctx, marker, add_bos=False, parse_special=True)
        if len(ids) == 1:
            out.add(int(ids[0]))
            logger.debug("Stop token: %r -> %d", marker, ids[0])
    return frozenset(out)


# ------------------------------ Session ------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """Everything one generation call needs besides the context."""

    prompt: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    seed: int = 0
    stop_strings: tuple[str, ...] = ()
    stop_token_markers: tuple[str, ...] = DEFAULT_STOP_TOKEN_MARKERS

    @classmethod
    def from_config(cls, prompt: str, cfg: GenerateConfig, **overrides) -> GenerationRequest:
        """Build a request from config, with None-valued overrides ignored."""
        req = cls(
            prompt=prompt,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
            top_k=cfg.top_k,
            top_p=cfg.top_p,
            seed=cfg.seed,
            stop_strings=tuple(cfg.stop_strings),
            stop_token_markers=tuple(cfg.stop_token_markers),
        )
        given = {k: (tuple(v) if isinstance(v, list) else v) for k, v in overrides.items() if v is not None}
        return replace(req, **given) if given else req


_TERMINAL_STATE = {
    StopReason.END_OF_GENERATION: GenerationState.COMPLETED,
    StopReason.MAX_TOKENS: GenerationState.COMPLETED,
    StopReason.STOP_TOKEN: GenerationState.STOPPED,
    StopReason.STOP_STRING: GenerationState.STOPPED,
    StopReason.CANCELLED: GenerationState.CANCELLED,
}


class GenerationSession:
    """One prompt -> text run against a loaded context.

    Non-taxonomy engine errors propagate unchanged; the owning `Session` maps
    them using `stage` (the engine call that was running) and `partial_text`.
    A `DecodeFailure` carries the text generated before it.
    """

    def __init__(
        self,
        engine: Engine,
        ctx: ContextHandle,
        request: GenerationRequest,
        *,
        on_token: Callable[[str], None] | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.engine = engine
        self.ctx = ctx
        self.request = request
        self.on_token = on_token
        self.cancel = cancel
        self.state = GenerationState.IDLE
        self.position = 0
        self.n_prompt_tokens = 0
        self.tokens_generated = 0
        # Engine call in flight; the owning Session names failures after it
        self.stage = "idle"
        self.partial_text = ""

    def _prefill(self, tokens: list[Token]) -> None:
        self.stage = "prefill"
        for i, batch in enumerate(plan_prefill(tokens, self.engine.n_batch(self.ctx))):
            rc = self.engine.decode(self.ctx, batch)
            if rc != 0:
                raise DecodeFailure(
                    f"Failed to decode prompt (chunk {i}, status {rc})", stage="prefill", index=i
                )
            self.position = int(batch.pos[-1]) + 1

    def _decode_loop(
        self, sampler: Sampler, detector: StopDetector, emitter: StreamEmitter, max_tokens: int
    ) -> tuple[StopReason, str | None]:
        for i in range(max_tokens):
            if self.cancel is not None and self.cancel.cancelled:
                return StopReason.CANCELLED, None

            self.stage = "sample"
            token = self.engine.sample(sampler, self.ctx)
            if self.engine.is_eog(self.ctx, token):
                return StopReason.END_OF_GENERATION, None
            if detector.is_stop_token(token):
                return StopReason.STOP_TOKEN, None

            self.stage = "token_to_piece"
            n_new = emitter.append(self.engine.token_to_piece(self.ctx, token))
            self.tokens_generated += 1

            match = detector.find(emitter.accumulated, n_new)
            if match is not None:
                emitter.truncate(match.start)
                return StopReason.STOP_STRING, match.stop

            emitter.flush()

            if i + 1 < max_tokens:
                self.stage = "generate"
                rc = self.engine.decode(self.ctx, Batch.single(token, self.position))
                if rc != 0:
                    raise DecodeFailure(
                        f"Failed to decode token {i} at position {self.position} (status {rc})",
                        stage="generate",
                        index=i,
                    )
                self.position += 1
        return StopReason.MAX_TOKENS, None

    def run(self) -> GenerationResult:
        """Run the session to a terminal state.

        :raises EmptyPrompt: If the prompt tokenizes to nothing.
        :raises PromptTooLong: If the prompt does not leave room in the context.
        :raises DecodeFailure: If any decode call fails (after the final flush).
        :return GenerationResult: Text (post stop-truncation) and how it ended.
        """
        req = self.request
        self.stage = "memory_clear"
        self.engine.memory_clear(self.ctx)

        self.stage = "tokenize"
        tokens = self.engine.tokenize(self.ctx, req.prompt, add_bos=True)
        if not tokens:
            raise EmptyPrompt("Prompt tokenized to zero tokens")
        n_ctx = self.engine.n_ctx(self.ctx)
        if len(tokens) >= n_ctx:
            raise PromptTooLong(f"Prompt too long: {len(tokens)} tokens, context holds {n_ctx}")
        self.n_prompt_tokens = len(tokens)

        max_tokens = resolve_max_tokens(req.max_tokens)
        self.stage = "stop_tokens"
        detector = StopDetector(
            req.stop_strings, resolve_stop_tokens(self.engine, self.ctx, req.stop_token_markers)
        )
        emitter = StreamEmitter(hold_back=detector.max_stop_len, sink=self.on_token)
        strategy = select_strategy(req.temperature, top_k=req.top_k, top_p=req.top_p)
        logger.debug("Prompt: %d tokens | max_tokens=%d | sampler=%s", len(tokens), max_tokens, strategy)

        self.stage = "sampler"
        sampler = self.engine.build_sampler(strategy, seed=req.seed)
        try:
            self.state = GenerationState.PREFILL
            self._prefill(tokens)
            self.state = GenerationState.DECODING
            reason, stop = self._decode_loop(sampler, detector, emitter, max_tokens)
        except Exception as exc:
            self.state = GenerationState.FAILED
            text = emitter.finish()
            self.partial_text = text
            if isinstance(exc, DecodeFailure):
                exc.partial_text = text
            raise
        finally:
            sampler.free()

        text = emitter.finish()
        self.state = _TERMINAL_STATE[reason]
        logger.debug("Generation %s (%s): %d tokens", self.state.value, reason.value, self.tokens_generated)
        return GenerationResult(
            text=text,
            state=self.state,
            stop_reason=reason,
            n_prompt_tokens=len(tokens),
            n_generated=self.tokens_generated,
            stop_match=stop,
        )
