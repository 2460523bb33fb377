"""Sampling strategies.

A strategy is chosen once per generation call from a single temperature value:

- temperature <= 0  -> `Deterministic` (arg-max)
- temperature > 0   -> `Stochastic(top_k, top_p, temperature)`

The stochastic chain is applied in a fixed order, each stage consuming the
previous stage's logits:

    top-k  ->  top-p  ->  temperature  ->  categorical draw

The chain is composed functionally (pure jnp functions over a logits vector);
nothing is mutated in place.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp

DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.9


@dataclass(frozen=True)
class Deterministic:
    """Greedy arg-max decoding."""

    kind: str = "deterministic"


@dataclass(frozen=True)
class Stochastic:
    """Top-k -> top-p -> temperature -> draw."""

    temperature: float
    top_k: int = DEFAULT_TOP_K
    top_p: float = DEFAULT_TOP_P
    min_keep: int = 1
    kind: str = "stochastic"


SamplingStrategy = Deterministic | Stochastic


def select_strategy(
    temperature: float, *, top_k: int = DEFAULT_TOP_K, top_p: float = DEFAULT_TOP_P
) -> SamplingStrategy:
    """Pick a sampling strategy from a temperature value.

    :param float temperature: <= 0 selects greedy decoding.
    :param int top_k: Top-k cutoff for the stochastic chain.
    :param float top_p: Nucleus threshold for the stochastic chain.
    :return SamplingStrategy: The strategy.
    """
    if temperature <= 0.0:
        return Deterministic()
    return Stochastic(temperature=float(temperature), top_k=int(top_k), top_p=float(top_p))


# ------------------------------ Chain stages --------------------------------


def top_k_filter(logits: jax.Array, k: int) -> jax.Array:
    """Mask everything below the k-th largest logit.

    :param jax.Array logits: [V] logits.
    :param int k: Number of candidates to keep (clamped to V).
    :return jax.Array: Logits with dropped candidates at -inf.
    """
    k = max(1, min(int(k), int(logits.shape[-1])))
    kth = jax.lax.top_k(logits, k)[0][..., -1]
    return jnp.where(logits < kth, -jnp.inf, logits)


def top_p_filter(logits: jax.Array, p: float, *, min_keep: int = 1) -> jax.Array:
    """Keep the smallest prefix of candidates whose probability mass reaches p.

    :param jax.Array logits: [V] logits (may contain -inf from earlier stages).
    :param float p: Nucleus threshold in (0, 1].
    :param int min_keep: Always keep at least this many candidates.
    :return jax.Array: Logits with dropped candidates at -inf.
    """
    if p >= 1.0:
        return logits
    order = jnp.argsort(-logits)
    sorted_logits = logits[order]
    probs = jax.nn.softmax(sorted_logits)
    cum = jnp.cumsum(probs)
    # Keep a candidate if the mass strictly before it is still below p
    keep_sorted = (cum - probs) < p
    keep_sorted = keep_sorted | (jnp.arange(logits.shape[-1]) < max(1, int(min_keep)))
    keep = jnp.zeros_like(keep_sorted).at[order].set(keep_sorted)
    return jnp.where(keep, logits, -jnp.inf)


def apply_temperature(logits: jax.Array, temperature: float) -> jax.Array:
    return logits / jnp.asarray(temperature, dtype=logits.dtype)


def sample_token(logits: jax.Array, strategy: SamplingStrategy, key: jax.Array | None) -> int:
    """Run the full chain for one logits vector and return a token id.

    :param jax.Array logits: [V] logits from the last decoded position.
    :param SamplingStrategy strategy: Strategy chosen for this generation.
    :param key: PRNG key (required for the stochastic chain).
    :raises ValueError: If a stochastic strategy gets no key.
    :return int: The sampled token id.
    """
    logits = jnp.asarray(logits, dtype=jnp.float32)
    if isinstance(strategy, Deterministic):
        return int(jnp.argmax(logits))
    if key is None:
        raise ValueError("stochastic sampling requires a PRNG key")
    x = top_k_filter(logits, strategy.top_k)
    x = top_p_filter(x, strategy.top_p, min_keep=strategy.min_keep)
    x = apply_temperature(x, strategy.temperature)
    return int(jax.random.categorical(key, x))
