"""Reference engine: a tiny recurrent causal LM with LoRA, on JAX/Equinox/Optax.

This file is the *only* place that knows how the model computes. Everything
else talks to it through the `Engine` facade (see `lorafit.engine`).

Model (`TinyLM`):

    h_t   = tanh(cell(h_{t-1}) + E[x_t])          recurrent state, [D]
    y     = h_t
    y     = y + tanh(fc_i(y) + lora_i(y))         for each block i
    logit = head(y)                               [V]

The recurrent state plays the role of the KV cache: a context holds it, decode
advances it, `memory_clear` zeros it. Positions are validated (contiguous,
inside n_ctx) but carry no numerical meaning.

LoRA (`LoraAdapter`): per adapted block, delta(y) = (alpha / rank) * B @ (A @ y),
B initialized to zero so a fresh adapter is an exact no-op. The first
`skip_layers` blocks get no adapter. Training differentiates w.r.t. the adapter
only; base weights are frozen by construction.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optax

from lorafit import ckpt
from lorafit.config import ModelConfig, TokenizerConfig
from lorafit.data.tokenizer import Tokenizer, build_tokenizer, tokenizer_config_from_dict
from lorafit.data.window import TokenDataset
from lorafit.engine import (
    BatchCallback,
    ContextParams,
    ModelInfo,
    ModelParams,
    OptParams,
    OptResult,
)
from lorafit.errors import EngineError
from lorafit.sampling import SamplingStrategy, Stochastic, sample_token
from lorafit.types import Batch, BatchProgress, Token
from lorafit.utils.devices import select_device
from lorafit.utils.tree import param_bytes, param_count
from lorafit.utils.xla import configure_cpu_threads, configured_threads

logger = logging.getLogger(__name__)

_DTYPES = {"float32": jnp.float32, "bfloat16": jnp.bfloat16}

# ------------------------------ Modules ------------------------------------


class TinyLM(eqx.Module):
    """Recurrent causal LM.

    Contract:
        step(h [D], token int) -> (h' [D], logits [V])
        scan(h [D], tokens [T]) -> (h_T [D], logits [T, V])
    """

    embed: eqx.nn.Embedding
    cell: eqx.nn.Linear
    blocks: list[eqx.nn.Linear]
    head: eqx.nn.Linear
    vocab_size: int = eqx.field(static=True)
    d_model: int = eqx.field(static=True)

    def __init__(self, *, vocab_size: int, d_model: int, num_layers: int, key: jax.Array, dtype: Any = jnp.float32):
        """Initialize the model.

        :param int vocab_size: Vocabulary size.
        :param int d_model: Hidden size.
        :param int num_layers: Number of residual blocks.
        :param jax.Array key: PRNG key for initialization.
        :param dtype: Parameter dtype.
        """
        k_embed, k_cell, k_head, k_blocks = jax.random.split(key, 4)
        self.vocab_size = int(vocab_size)
        self.d_model = int(d_model)
        self.embed = eqx.nn.Embedding(vocab_size, d_model, key=k_embed, dtype=dtype)
        self.cell = eqx.nn.Linear(d_model, d_model, key=k_cell, dtype=dtype)
        self.blocks = [
            eqx.nn.Linear(d_model, d_model, key=k, dtype=dtype)
            for k in jax.random.split(k_blocks, num_layers)
        ]
        self.head = eqx.nn.Linear(d_model, vocab_size, use_bias=False, key=k_head, dtype=dtype)

    @property
    def num_layers(self) -> int:
        return len(self.blocks)

    def initial_state(self) -> jax.Array:
        return jnp.zeros((self.d_model,), dtype=jnp.float32)

    def step(
        self, h: jax.Array, token: jax.Array, adapter: LoraAdapter | None = None, scale: float = 1.0
    ) -> tuple[jax.Array, jax.Array]:
        x = self.embed.weight[token].astype(jnp.float32)
        h = jnp.tanh(self.cell(h.astype(self.cell.weight.dtype)).astype(jnp.float32) + x)
        y = h
        for i, fc in enumerate(self.blocks):
            z = fc(y.astype(fc.weight.dtype)).astype(jnp.float32)
            if adapter is not None:
                z = z + scale * adapter.delta(i, y)
            y = y + jnp.tanh(z)
        logits = self.head(y.astype(self.head.weight.dtype)).astype(jnp.float32)
        return h, logits

    def scan(
        self, h: jax.Array, tokens: jax.Array, adapter: LoraAdapter | None = None, scale: float = 1.0
    ) -> tuple[jax.Array, jax.Array]:
        def body(carry, tok):
            carry, logits = self.step(carry, tok, adapter, scale)
            return carry, logits

        return jax.lax.scan(body, h, tokens)


class LoraAdapter(eqx.Module):
    """Low-rank deltas for the residual blocks of a TinyLM."""

    a: list[jax.Array]
    b: list[jax.Array]
    rank: int = eqx.field(static=True)
    alpha: float = eqx.field(static=True)
    skip_layers: int = eqx.field(static=True)
    num_layers: int = eqx.field(static=True)

    def __init__(self, *, d_model: int, num_layers: int, rank: int, alpha: float, skip_layers: int, key: jax.Array):
        """Initialize a fresh adapter (A ~ N(0, 1/d), B = 0).

        :param int d_model: Hidden size of the base model.
        :param int num_layers: Number of blocks in the base model.
        :param int rank: LoRA rank.
        :param float alpha: LoRA alpha (delta scaled by alpha / rank).
        :param int skip_layers: Leading blocks left without an adapter.
        :param jax.Array key: PRNG key.
        """
        n = max(0, num_layers - skip_layers)
        keys = jax.random.split(key, max(1, n))
        self.rank = int(rank)
        self.alpha = float(alpha)
        self.skip_layers = int(skip_layers)
        self.num_layers = int(num_layers)
        self.a = [jax.random.normal(keys[j], (rank, d_model), dtype=jnp.float32) / jnp.sqrt(d_model) for j in range(n)]
        self.b = [jnp.zeros((d_model, rank), dtype=jnp.float32) for _ in range(n)]

    def delta(self, layer: int, y: jax.Array) -> jax.Array:
        j = layer - self.skip_layers
        if j < 0:
            return jnp.zeros_like(y)
        return (self.alpha / self.rank) * (self.b[j] @ (self.a[j] @ y))

    def to_config(self, d_model: int) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "alpha": self.alpha,
            "skip_layers": self.skip_layers,
            "num_layers": self.num_layers,
            "d_model": int(d_model),
        }


# ------------------------------ Builders -----------------------------------


def architecture_from_config(cfg: ModelConfig) -> dict[str, Any]:
    return {
        "vocab_size": int(cfg.vocab_size),
        "d_model": int(cfg.d_model),
        "num_layers": int(cfg.num_layers),
        "param_dtype": cfg.param_dtype,
    }


def build_model(arch: dict[str, Any], *, key: jax.Array) -> TinyLM:
    """Build a TinyLM from an architecture dict.

    :param dict[str, Any] arch: vocab_size, d_model, num_layers, param_dtype.
    :param jax.Array key: PRNG key for initialization.
    :raises ValueError: If param_dtype is unknown.
    :return TinyLM: The model.
    """
    dtype_name = arch.get("param_dtype", "float32")
    if dtype_name not in _DTYPES:
        raise ValueError(f"Unknown param_dtype: {dtype_name!r}")
    return TinyLM(
        vocab_size=int(arch["vocab_size"]),
        d_model=int(arch["d_model"]),
        num_layers=int(arch["num_layers"]),
        key=key,
        dtype=_DTYPES[dtype_name],
    )


def init_model(directory: str | Path, model_cfg: ModelConfig, tok_cfg: TokenizerConfig) -> Path:
    """Write a randomly initialized model (weights + tokenizer config) to disk.

    :param directory: Target directory.
    :param ModelConfig model_cfg: Architecture fields and init seed.
    :param TokenizerConfig tok_cfg: Tokenizer to pair with the model.
    :raises ValueError: If the tokenizer does not fit the vocabulary.
    :return Path: The model directory.
    """
    tokenizer = build_tokenizer(tok_cfg)
    if len(tokenizer) > model_cfg.vocab_size:
        raise ValueError(
            f"tokenizer has {len(tokenizer)} ids but model.vocab_size={model_cfg.vocab_size}"
        )
    arch = architecture_from_config(model_cfg)
    model = build_model(arch, key=jax.random.PRNGKey(model_cfg.init_seed))
    params = eqx.filter(model, eqx.is_array)
    logger.info("Initialized model: %s params", f"{param_count(params):,}")
    return ckpt.save_model(
        directory,
        params,
        config={"architecture": arch, "tokenizer": tokenizer.to_config()},
    )


# ------------------------------ Handles ------------------------------------


@dataclass
class JaxModel:
    path: str
    model: TinyLM
    tokenizer: Tokenizer
    arch: dict[str, Any]
    device: jax.Device
    freed: bool = False


@dataclass
class JaxAdapter:
    adapter: LoraAdapter
    d_model: int
    freed: bool = False


@dataclass
class _OptState:
    tx: optax.GradientTransformation
    state: Any
    params: OptParams


@dataclass
class JaxContext:
    model: JaxModel
    params: ContextParams
    h: jax.Array
    n_past: int = 0
    last_logits: jax.Array | None = None
    adapter: JaxAdapter | None = None
    scale: float = 1.0
    opt: _OptState | None = None
    freed: bool = False


@dataclass
class JaxSampler:
    strategy: SamplingStrategy
    key: jax.Array | None
    freed: bool = False

    def next_key(self) -> jax.Array | None:
        if self.key is None:
            return None
        self.key, sub = jax.random.split(self.key)
        return sub

    def free(self) -> None:
        self.freed = True
        self.key = None


# ------------------------------ Compiled kernels ---------------------------


@eqx.filter_jit
def _run_tokens(model: TinyLM, adapter: LoraAdapter | None, scale: float, h: jax.Array, tokens: jax.Array):
    return model.scan(h, tokens, adapter, scale)


def _window_loss(adapter: LoraAdapter, model: TinyLM, scale: float, inputs: jax.Array, targets: jax.Array) -> jax.Array:
    _, logits = model.scan(model.initial_state(), inputs, adapter, scale)
    return jnp.mean(optax.softmax_cross_entropy_with_integer_labels(logits, targets))


@eqx.filter_jit
def _eval_step(adapter: LoraAdapter, model: TinyLM, scale: float, inputs: jax.Array, targets: jax.Array) -> jax.Array:
    return _window_loss(adapter, model, scale, inputs, targets)


@eqx.filter_jit
def _train_step(
    adapter: LoraAdapter,
    opt_state: Any,
    tx: optax.GradientTransformation,
    model: TinyLM,
    scale: float,
    inputs: jax.Array,
    targets: jax.Array,
):
    loss, grads = eqx.filter_value_and_grad(_window_loss)(adapter, model, scale, inputs, targets)
    params = eqx.filter(adapter, eqx.is_array)
    updates, opt_state = tx.update(grads, opt_state, params)
    adapter = eqx.apply_updates(adapter, updates)
    return adapter, opt_state, loss


# ------------------------------ Engine -------------------------------------


class JaxEngine:
    """`Engine` implementation backed by TinyLM.

    Every method that can fail raises `EngineError`, except `decode`, which
    returns a nonzero status.
    """

    def __init__(self, *, seed: int = 0) -> None:
        self._initialized = False
        self._key = jax.random.PRNGKey(seed)
        self._n_adapters = 0

    # -- backend / model / context lifecycle --

    def backend_init(self) -> None:
        self._initialized = True
        logger.debug("JAX backend ready (%s)", jax.default_backend())

    def backend_free(self) -> None:
        self._initialized = False

    def load_model(self, path: str, params: ModelParams) -> JaxModel:
        try:
            config = ckpt.read_model_config(path)
            arch = dict(config["architecture"])
            tokenizer = build_tokenizer(tokenizer_config_from_dict(config.get("tokenizer") or {}))
            skeleton = build_model(arch, key=jax.random.PRNGKey(0))
            like, static = eqx.partition(skeleton, eqx.is_array)
            restored = ckpt.restore_model_params(path, like)
            device = select_device(params.n_gpu_layers)
            model = jax.device_put(eqx.combine(restored, static), device)
        except Exception as exc:
            raise EngineError(f"could not load model from {path}: {exc}") from exc
        if len(tokenizer) > model.vocab_size:
            raise EngineError(f"tokenizer has {len(tokenizer)} ids but the model vocabulary is {model.vocab_size}")
        return JaxModel(path=str(path), model=model, tokenizer=tokenizer, arch=arch, device=device)

    def free_model(self, model: JaxModel) -> None:
        model.freed = True

    def create_context(self, model: JaxModel, params: ContextParams) -> JaxContext:
        if params.n_ctx < 1 or params.n_batch < 1:
            raise EngineError(f"invalid context params: {params}")
        configure_cpu_threads(params.n_threads, logger=logger)
        return JaxContext(model=model, params=params, h=model.model.initial_state())

    def free_context(self, ctx: JaxContext) -> None:
        ctx.freed = True
        ctx.last_logits = None
        ctx.opt = None
        ctx.adapter = None

    def describe(self, model: JaxModel, ctx: JaxContext) -> ModelInfo:
        params = eqx.filter(model.model, eqx.is_array)
        arch = model.arch
        return ModelInfo(
            description=f"tinylm {arch['num_layers']}L d{arch['d_model']} V{arch['vocab_size']} {arch.get('param_dtype', 'float32')}",
            size_bytes=param_bytes(params),
            n_params=param_count(params),
            n_threads=configured_threads() or ctx.params.n_threads,
            n_ctx=ctx.params.n_ctx,
            device=str(model.device.platform),
        )

    # -- context queries --

    def n_ctx(self, ctx: JaxContext) -> int:
        return int(ctx.params.n_ctx)

    def n_batch(self, ctx: JaxContext) -> int:
        return int(ctx.params.n_batch)

    def memory_clear(self, ctx: JaxContext) -> None:
        ctx.h = ctx.model.model.initial_state()
        ctx.n_past = 0
        ctx.last_logits = None

    # -- tokens --

    def tokenize(self, ctx: JaxContext, text: str, *, add_bos: bool, parse_special: bool = False) -> list[Token]:
        return ctx.model.tokenizer.encode(text, add_bos=add_bos, parse_special=parse_special)

    def decode(self, ctx: JaxContext, batch: Batch) -> int:
        n = batch.n_tokens
        if n == 0 or n > ctx.params.n_batch:
            logger.error("decode: batch of %d tokens outside (0, %d]", n, ctx.params.n_batch)
            return 1
        expected = np.arange(ctx.n_past, ctx.n_past + n, dtype=np.int32)
        if not np.array_equal(batch.pos, expected):
            logger.error("decode: positions %s do not continue from %d", batch.pos.tolist(), ctx.n_past)
            return 1
        if int(batch.pos[-1]) >= ctx.params.n_ctx:
            logger.error("decode: position %d exceeds context size %d", int(batch.pos[-1]), ctx.params.n_ctx)
            return 1

        adapter = ctx.adapter.adapter if ctx.adapter is not None else None
        tokens = jnp.asarray(batch.token, dtype=jnp.int32)
        h, logits = _run_tokens(ctx.model.model, adapter, ctx.scale, ctx.h, tokens)
        ctx.h = h
        ctx.n_past += n
        rows = np.flatnonzero(batch.logits)
        ctx.last_logits = logits[int(rows[-1])] if rows.size else None
        return 0

    def token_to_piece(self, ctx: JaxContext, token: Token) -> bytes:
        try:
            return ctx.model.tokenizer.token_to_piece(int(token))
        except ValueError as exc:
            raise EngineError(str(exc)) from exc

    def is_eog(self, ctx: JaxContext, token: Token) -> bool:
        return ctx.model.tokenizer.is_eog(int(token))

    # -- sampling --

    def build_sampler(self, strategy: SamplingStrategy, *, seed: int) -> JaxSampler:
        key = jax.random.PRNGKey(seed) if isinstance(strategy, Stochastic) else None
        return JaxSampler(strategy=strategy, key=key)

    def sample(self, sampler: JaxSampler, ctx: JaxContext) -> Token:
        if sampler.freed:
            raise EngineError("sampler used after free")
        if ctx.last_logits is None:
            raise EngineError("no logits available; decode a batch with logits first")
        return sample_token(ctx.last_logits, sampler.strategy, sampler.next_key())

    # -- adapters --

    def create_adapter(self, model: JaxModel, *, rank: int, alpha: float, skip_layers: int) -> JaxAdapter:
        num_layers = model.model.num_layers
        if rank < 1 or not 0 <= skip_layers < num_layers:
            raise EngineError(f"invalid adapter shape: rank={rank} skip_layers={skip_layers} num_layers={num_layers}")
        adapter = LoraAdapter(
            d_model=model.model.d_model,
            num_layers=num_layers,
            rank=rank,
            alpha=alpha,
            skip_layers=skip_layers,
            key=jax.random.fold_in(self._key, self._n_adapters),
        )
        self._n_adapters += 1
        return JaxAdapter(adapter=jax.device_put(adapter, model.device), d_model=model.model.d_model)

    def load_adapter(self, model: JaxModel, path: str) -> JaxAdapter:
        try:
            cfg = ckpt.read_adapter_config(path)
            if int(cfg["d_model"]) != model.model.d_model or int(cfg["num_layers"]) != model.model.num_layers:
                raise ValueError(
                    f"adapter built for d_model={cfg['d_model']} num_layers={cfg['num_layers']}, "
                    f"model has d_model={model.model.d_model} num_layers={model.model.num_layers}"
                )
            skeleton = self.create_adapter(
                model, rank=int(cfg["rank"]), alpha=float(cfg["alpha"]), skip_layers=int(cfg["skip_layers"])
            ).adapter
            like, static = eqx.partition(skeleton, eqx.is_array)
            restored = ckpt.restore_adapter_params(path, like)
        except Exception as exc:
            raise EngineError(f"could not load adapter from {path}: {exc}") from exc
        adapter = jax.device_put(eqx.combine(restored, static), model.device)
        return JaxAdapter(adapter=adapter, d_model=model.model.d_model)

    def apply_adapter(self, ctx: JaxContext, adapter: JaxAdapter, scale: float) -> None:
        if adapter.freed:
            raise EngineError("adapter used after free")
        if adapter.d_model != ctx.model.model.d_model:
            raise EngineError(f"adapter d_model={adapter.d_model} does not match model d_model={ctx.model.model.d_model}")
        ctx.adapter = adapter
        ctx.scale = float(scale)
        ctx.opt = None

    def remove_adapter(self, ctx: JaxContext) -> None:
        ctx.adapter = None
        ctx.opt = None

    def free_adapter(self, adapter: JaxAdapter) -> None:
        adapter.freed = True

    def save_adapter(self, adapter: JaxAdapter, path: str) -> None:
        if adapter.freed:
            raise EngineError("adapter used after free")
        try:
            ckpt.save_adapter(
                path,
                eqx.filter(adapter.adapter, eqx.is_array),
                config=adapter.adapter.to_config(adapter.d_model),
            )
        except Exception as exc:
            raise EngineError(f"could not save adapter to {path}: {exc}") from exc

    # -- training --

    def opt_init(self, ctx: JaxContext, model: JaxModel, params: OptParams) -> None:
        if ctx.adapter is None:
            raise EngineError("optimizer needs an applied adapter (only adapter tensors are trainable)")
        tx = optax.inject_hyperparams(optax.adamw)(
            learning_rate=params.schedule.lr(0),
            weight_decay=params.weight_decay,
        )
        state = tx.init(eqx.filter(ctx.adapter.adapter, eqx.is_array))
        ctx.opt = _OptState(tx=tx, state=state, params=params)

    def opt_epoch(
        self,
        ctx: JaxContext,
        dataset: TokenDataset,
        split_index: int,
        *,
        epoch: int,
        on_batch: BatchCallback,
    ) -> tuple[OptResult, OptResult | None]:
        if ctx.opt is None or ctx.adapter is None:
            raise EngineError("optimizer not initialized")
        if dataset.n_ctx > ctx.params.n_ctx:
            raise EngineError(f"dataset windows ({dataset.n_ctx}) exceed the context ({ctx.params.n_ctx})")

        opt = ctx.opt
        opt.state.hyperparams["learning_rate"] = jnp.asarray(opt.params.schedule.lr(epoch), dtype=jnp.float32)
        model = ctx.model.model
        adapter = ctx.adapter.adapter

        t0 = time.perf_counter()
        total = 0.0
        for i in range(split_index):
            x = jnp.asarray(dataset.inputs(i))
            y = jnp.asarray(dataset.targets(i))
            adapter, opt.state, loss = _train_step(adapter, opt.state, opt.tx, model, ctx.scale, x, y)
            total += float(loss)
            ctx.adapter.adapter = adapter
            on_batch(BatchProgress(True, i, split_index, total / (i + 1), time.perf_counter() - t0))
        train = OptResult(loss=total / max(1, split_index), n_batches=int(split_index))

        n_eval = dataset.ndata - split_index
        if n_eval <= 0:
            return train, None
        t0 = time.perf_counter()
        total = 0.0
        for j in range(n_eval):
            i = split_index + j
            loss = _eval_step(adapter, model, ctx.scale, jnp.asarray(dataset.inputs(i)), jnp.asarray(dataset.targets(i)))
            total += float(loss)
            on_batch(BatchProgress(False, j, n_eval, total / (j + 1), time.perf_counter() - t0))
        return train, OptResult(loss=total / n_eval, n_batches=int(n_eval))


__all__ = [
    "JaxEngine",
    "LoraAdapter",
    "TinyLM",
    "build_model",
    "init_model",
]
