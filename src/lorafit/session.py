"""Session: explicit owner of every engine handle.

One `Session` holds at most one model, one context, one adapter, one dataset
and one optimizer setup. Nothing is global; two callers who need two models
create two sessions.

Lifecycle:

    with Session(JaxEngine(), cfg) as s:          # init_backend()
        s.load_model("models/tiny")               # frees any previous context+model
        s.create_adapter()                        # frees any previous adapter
        s.generate("Hello")
    # close(): dataset -> adapter -> context -> model -> backend -> sinks

Every failure that crosses this boundary is a `LorafitError`. Engine errors are
mapped with `raise ... from exc`; nothing is retried. Streaming generation never
raises taxonomy errors: they go to the stream sink's on_error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from lorafit.config import Config, resolve_n_ctx, resolve_n_threads
from lorafit.data.window import TokenDataset, build_dataset
from lorafit.engine import (
    AdapterHandle,
    ContextHandle,
    ContextParams,
    Engine,
    LRSchedule,
    ModelHandle,
    ModelInfo,
    ModelParams,
    OptParams,
)
from lorafit.errors import (
    AdapterApplyFailed,
    AdapterCreateFailed,
    AdapterLoadFailed,
    AdapterNotLoaded,
    AdapterSaveFailed,
    BackendNotInitialized,
    ContextCreateFailed,
    DecodeFailure,
    EngineError,
    LorafitError,
    ModelLoadFailed,
    ModelNotLoaded,
    NoAdapterToSave,
    TrainingNotInitialized,
)
from lorafit.generate import GenerationRequest, GenerationSession
from lorafit.sinks import OutputSink, SinkLogHandler, SinkSlot
from lorafit.train import run_epoch
from lorafit.types import BatchProgress, CancelToken, EpochResult, GenerationResult, GenerationState, StopReason

logger = logging.getLogger(__name__)

_LOG_ROOT = "lorafit"


class Session:
    """Model/context/adapter/dataset owner exposing generation and training."""

    def __init__(self, engine: Engine, cfg: Config | None = None) -> None:
        self.engine = engine
        self.cfg = cfg or Config()

        self.log_slot = SinkSlot("log")
        self.stream_slot = SinkSlot("stream")
        self._log_handler: SinkLogHandler | None = None

        self._backend = False
        self._model: ModelHandle | None = None
        self._ctx: ContextHandle | None = None
        self._ctx_params: ContextParams | None = None
        self._adapter: AdapterHandle | None = None
        self._dataset: TokenDataset | None = None
        self._schedule: LRSchedule | None = None

    # ------------------------------ lifecycle ------------------------------

    def init_backend(self) -> None:
        """Bring up the engine backend and route lorafit logs to the log sink."""
        if self._backend:
            return
        try:
            self.engine.backend_init()
        except EngineError as exc:
            raise BackendNotInitialized(f"Backend init failed: {exc}") from exc
        self._backend = True
        self._log_handler = SinkLogHandler(self.log_slot)
        logging.getLogger(_LOG_ROOT).addHandler(self._log_handler)
        logger.info("Backend initialized")

    def close(self) -> None:
        """Release everything, in dependency order. Safe to call twice."""
        self._dataset = None
        self._schedule = None
        self._free_adapter()
        self._free_model()
        if self._backend:
            self.engine.backend_free()
            self._backend = False
            logger.info("Backend released")
        if self._log_handler is not None:
            logging.getLogger(_LOG_ROOT).removeHandler(self._log_handler)
            self._log_handler = None
        self.log_slot.clear()
        self.stream_slot.clear()

    def __enter__(self) -> Session:
        self.init_backend()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------ sinks ----------------------------------

    def set_log_sink(self, sink: OutputSink | None) -> None:
        self.log_slot.register(sink)

    def set_stream_sink(self, sink: OutputSink | None) -> None:
        self.stream_slot.register(sink)

    # ------------------------------ guards ---------------------------------

    def _require_backend(self) -> None:
        if not self._backend:
            raise BackendNotInitialized("Backend not initialized; call init_backend() first")

    def _require_model(self) -> None:
        self._require_backend()
        if self._model is None or self._ctx is None:
            raise ModelNotLoaded("No model loaded")

    def has_model(self) -> bool:
        return self._model is not None and self._ctx is not None

    def has_adapter(self) -> bool:
        return self._adapter is not None

    @property
    def dataset(self) -> TokenDataset | None:
        return self._dataset

    @property
    def context_params(self) -> ContextParams | None:
        return self._ctx_params

    # ------------------------------ model ----------------------------------

    def _free_adapter(self) -> None:
        if self._adapter is None:
            return
        if self._ctx is not None:
            self.engine.remove_adapter(self._ctx)
        self.engine.free_adapter(self._adapter)
        self._adapter = None
        self._schedule = None

    def _free_model(self) -> None:
        self._free_adapter()
        self._dataset = None
        if self._ctx is not None:
            self.engine.free_context(self._ctx)
            self._ctx = None
            self._ctx_params = None
        if self._model is not None:
            self.engine.free_model(self._model)
            self._model = None

    def load_model(
        self,
        path: str | Path | None = None,
        *,
        n_threads: int | None = None,
        n_ctx: int | None = None,
        n_gpu_layers: int | None = None,
        training: bool = False,
    ) -> ModelInfo:
        """Load a model and create its context, replacing whatever was loaded.

        Values <= 0 (or None, falling back to config) resolve to defaults:
        threads = max(2, cores - 2); context = 2048 (inference) / 512 (training).

        :param path: Model directory (defaults to model.path).
        :param n_threads: Thread count.
        :param n_ctx: Context size.
        :param n_gpu_layers: Accelerator offload (> 0 prefers an accelerator).
        :param bool training: Build a training context (n_batch = n_ubatch = n_ctx).
        :raises ModelLoadFailed: If the engine could not load the model.
        :raises ContextCreateFailed: If the engine could not create a context.
        :return ModelInfo: Summary of the loaded model.
        """
        self._require_backend()
        mcfg = self.cfg.model
        path = path if path is not None else mcfg.path
        if path is None:
            raise ModelLoadFailed("No model path given (set model.path)")

        self._free_model()

        threads = resolve_n_threads(n_threads if n_threads is not None else mcfg.n_threads)
        ctx_size = resolve_n_ctx(n_ctx if n_ctx is not None else mcfg.n_ctx, training=training)
        gpu_layers = n_gpu_layers if n_gpu_layers is not None else mcfg.n_gpu_layers

        try:
            model = self.engine.load_model(str(path), ModelParams(n_gpu_layers=gpu_layers))
        except EngineError as exc:
            raise ModelLoadFailed(f"Failed to load model from {path}: {exc}") from exc

        if training:
            params = ContextParams.for_training(ctx_size, threads)
        else:
            params = ContextParams.for_inference(ctx_size, threads, n_batch=mcfg.n_batch, n_ubatch=mcfg.n_ubatch)
        try:
            ctx = self.engine.create_context(model, params)
        except EngineError as exc:
            self.engine.free_model(model)
            raise ContextCreateFailed(f"Failed to create context: {exc}") from exc

        self._model, self._ctx, self._ctx_params = model, ctx, params
        info = self.engine.describe(model, ctx)
        logger.info("Model loaded: %s | threads=%d | ctx=%d", info.description, info.n_threads, info.n_ctx)
        return info

    # ------------------------------ adapters -------------------------------

    def _apply(self, adapter: AdapterHandle, scale: float) -> None:
        try:
            self.engine.apply_adapter(self._ctx, adapter, scale)
        except EngineError as exc:
            self.engine.free_adapter(adapter)
            raise AdapterApplyFailed(f"Failed to apply adapter: {exc}") from exc
        self._adapter = adapter

    def create_adapter(
        self,
        *,
        rank: int | None = None,
        alpha: float | None = None,
        skip_layers: int | None = None,
        scale: float | None = None,
    ) -> None:
        """Create a fresh LoRA adapter and apply it (replacing any current one).

        :raises AdapterCreateFailed: If the engine rejected the adapter shape.
        :raises AdapterApplyFailed: If the adapter could not be applied.
        """
        self._require_model()
        acfg = self.cfg.adapter
        rank = int(rank if rank is not None else acfg.rank)
        alpha = float(alpha if alpha is not None else acfg.alpha)
        skip_layers = int(skip_layers if skip_layers is not None else acfg.skip_layers)
        scale = float(scale if scale is not None else acfg.scale)

        self._free_adapter()
        try:
            adapter = self.engine.create_adapter(self._model, rank=rank, alpha=alpha, skip_layers=skip_layers)
        except EngineError as exc:
            raise AdapterCreateFailed(f"Failed to create adapter: {exc}") from exc
        self._apply(adapter, scale)
        logger.info("LoRA adapter created: rank=%d alpha=%g skip_layers=%d", rank, alpha, skip_layers)

    def load_adapter(self, path: str | Path, *, scale: float | None = None) -> None:
        """Load a saved adapter and apply it (replacing any current one).

        :raises AdapterLoadFailed: If the engine could not load the adapter.
        :raises AdapterApplyFailed: If the adapter could not be applied.
        """
        self._require_model()
        scale = float(scale if scale is not None else self.cfg.adapter.scale)
        self._free_adapter()
        try:
            adapter = self.engine.load_adapter(self._model, str(path))
        except EngineError as exc:
            raise AdapterLoadFailed(f"Failed to load adapter from {path}: {exc}") from exc
        self._apply(adapter, scale)
        logger.info("LoRA adapter loaded: %s (scale=%g)", path, scale)

    def remove_adapter(self) -> bool:
        """Detach and free the current adapter. Returns False if there was none."""
        self._require_backend()
        if self._adapter is None:
            return False
        self._free_adapter()
        logger.info("LoRA adapter removed")
        return True

    def save_adapter(self, path: str | Path) -> Path:
        """Persist the current adapter.

        :raises NoAdapterToSave: If no adapter is loaded.
        :raises AdapterSaveFailed: If the engine could not write it.
        :return Path: Where it was written.
        """
        self._require_backend()
        if self._adapter is None:
            raise NoAdapterToSave("No adapter to save")
        try:
            self.engine.save_adapter(self._adapter, str(path))
        except EngineError as exc:
            raise AdapterSaveFailed(f"Failed to save adapter to {path}: {exc}") from exc
        logger.info("LoRA adapter saved: %s", path)
        return Path(path)

    # ------------------------------ generation -----------------------------

    def _request(self, prompt: str, overrides: dict) -> GenerationRequest:
        return GenerationRequest.from_config(prompt, self.cfg.generate, **overrides)

    def generate(
        self,
        prompt: str,
        *,
        cancel: CancelToken | None = None,
        **overrides,
    ) -> GenerationResult:
        """Generate text and return it in one piece.

        Overrides (None = config value): max_tokens, temperature, top_k, top_p,
        seed, stop_strings, stop_token_markers.

        :raises ModelNotLoaded: If no model is loaded.
        :raises EmptyPrompt: If the prompt tokenizes to nothing.
        :raises PromptTooLong: If the prompt does not fit the context.
        :raises DecodeFailure: If the engine fails mid-generation.
        :return GenerationResult: Result with `text` set.
        """
        self._require_model()
        gen = GenerationSession(self.engine, self._ctx, self._request(prompt, overrides), cancel=cancel)
        try:
            return gen.run()
        except EngineError as exc:
            raise DecodeFailure(
                f"Engine {gen.stage} failed during generation: {exc}",
                stage=gen.stage,
                index=gen.tokens_generated,
                partial_text=gen.partial_text,
            ) from exc

    def generate_streaming(
        self,
        prompt: str,
        *,
        sink: OutputSink | None = None,
        cancel: CancelToken | None = None,
        **overrides,
    ) -> GenerationResult | None:
        """Generate text as a stream of chunks into the stream sink.

        The call ends with exactly one on_complete or on_error. Taxonomy errors
        are reported, not raised.

        :param sink: Registers this sink first (replacing the current one).
        :param cancel: Optional cancellation token.
        :return: Result with `text=None`, or None if the call failed before
            generation started.
        """
        if sink is not None:
            self.stream_slot.register(sink)
        gen: GenerationSession | None = None
        try:
            self._require_model()
            gen = GenerationSession(
                self.engine,
                self._ctx,
                self._request(prompt, overrides),
                on_token=self.stream_slot.token,
                cancel=cancel,
            )
            result = gen.run()
        except (LorafitError, EngineError) as exc:
            message = str(exc)
            if isinstance(exc, EngineError) and gen is not None:
                message = f"Engine {gen.stage} failed during generation: {exc}"
            logger.error("Streaming generation failed: %s", message)
            self.stream_slot.error(message)
            if gen is None or gen.state != GenerationState.FAILED:
                return None
            return GenerationResult(
                text=None,
                state=GenerationState.FAILED,
                stop_reason=StopReason.DECODE_FAILURE,
                n_prompt_tokens=gen.n_prompt_tokens,
                n_generated=gen.tokens_generated,
            )
        self.stream_slot.complete()
        return GenerationResult(
            text=None,
            state=result.state,
            stop_reason=result.stop_reason,
            n_prompt_tokens=result.n_prompt_tokens,
            n_generated=result.n_generated,
            stop_match=result.stop_match,
        )

    # ------------------------------ training -------------------------------

    def set_training_data(self, text: str) -> TokenDataset:
        """Tokenize and window training text for the current context size.

        :raises ModelNotLoaded: If no model is loaded.
        :raises TrainingTextTooShort: If the text yields fewer than 2 tokens.
        :return TokenDataset: The dataset (also kept by the session).
        """
        self._require_model()
        self._dataset = None
        tokens = self.engine.tokenize(self._ctx, text, add_bos=True)
        logger.info("Training text: %d tokens", len(tokens))
        self._dataset = build_dataset(tokens, self.engine.n_ctx(self._ctx))
        return self._dataset

    def init_training(
        self,
        *,
        learning_rate: float | None = None,
        epochs: int | None = None,
        weight_decay: float | None = None,
    ) -> LRSchedule:
        """Set up the adapter-only optimizer and the epoch LR schedule.

        :raises ModelNotLoaded: If no model is loaded.
        :raises AdapterNotLoaded: If no adapter is applied.
        :raises TrainingNotInitialized: If the engine could not set up the optimizer.
        :return LRSchedule: The schedule in effect.
        """
        self._require_model()
        if self._adapter is None:
            raise AdapterNotLoaded("No adapter to train; create or load one first")
        tcfg = self.cfg.train
        lr0 = float(learning_rate if learning_rate is not None else tcfg.learning_rate)
        n_epochs = int(epochs if epochs is not None else tcfg.epochs)
        lr_min = lr0 * float(tcfg.lr_min_ratio)
        schedule = LRSchedule(lr0=lr0, lr_min=lr_min, epochs=n_epochs)
        wd = float(weight_decay if weight_decay is not None else tcfg.weight_decay)

        self._schedule = None
        try:
            self.engine.opt_init(self._ctx, self._model, OptParams(schedule=schedule, weight_decay=wd, seed=tcfg.seed))
        except EngineError as exc:
            raise TrainingNotInitialized(f"Optimizer init failed: {exc}") from exc
        self._schedule = schedule
        logger.info("Training initialized: lr=%.3e lr_min=%.3e epochs=%d", lr0, lr_min, n_epochs)
        return schedule

    def train_epoch(
        self,
        epoch: int,
        *,
        cancel: CancelToken | None = None,
        on_batch: Callable[[BatchProgress], None] | None = None,
    ) -> EpochResult:
        """Run one epoch over the current dataset.

        :param int epoch: Zero-based epoch index (drives the LR schedule).
        :param cancel: Optional cancellation token.
        :param on_batch: Optional per-batch observer (BatchProgress).
        :raises TrainingNotInitialized: If no dataset or optimizer is set up.
        :raises EpochFailed: If the engine fails mid-epoch.
        :raises Cancelled: If cancelled mid-epoch.
        :return EpochResult: Aggregate metrics.
        """
        self._require_model()
        if self._dataset is None:
            raise TrainingNotInitialized("No training data; call set_training_data() first")
        if self._schedule is None or self._adapter is None:
            raise TrainingNotInitialized("Optimizer not initialized; call init_training() first")

        return run_epoch(
            self.engine,
            self._ctx,
            self._dataset,
            epoch=epoch,
            schedule=self._schedule,
            train_fraction=self.cfg.train.train_fraction,
            cancel=cancel,
            on_batch=on_batch,
        )
