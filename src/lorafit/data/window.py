"""Dataset windowing for adapter training.

Training text becomes a set of fixed windows of `n_ctx + 1` tokens (inputs plus
next-token targets), taken at a fixed stride over the token stream.

Core contract:
- stride = max(1, n_ctx // 2): consecutive windows overlap by about half
- short inputs are padded by repeating the *whole* original sequence until
  len(tokens) >= n_ctx + 1 + stride, so padding keeps natural token boundaries
- ndata = (len(tokens) - (n_ctx + 1)) // stride + 1, every window fully inside

The epoch split lives here too because it is a pure function of ndata.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from lorafit.errors import TrainingTextTooShort

logger = logging.getLogger(__name__)


def compute_stride(n_ctx: int) -> int:
    """Stride between consecutive windows.

    :param int n_ctx: Context size.
    :return int: max(1, n_ctx // 2).
    """
    return max(1, int(n_ctx) // 2)


def min_window_tokens(n_ctx: int, stride: int) -> int:
    """Minimum padded length required before windowing."""
    return int(n_ctx) + 1 + int(stride)


def count_windows(n_tokens: int, n_ctx: int, stride: int) -> int:
    """Number of full windows of n_ctx+1 tokens at the given stride.

    :param int n_tokens: Length of the (padded) token sequence.
    :param int n_ctx: Context size.
    :param int stride: Window stride (>= 1).
    :return int: Window count (0 if not even one window fits).
    """
    span = int(n_ctx) + 1
    if n_tokens < span:
        return 0
    return (int(n_tokens) - span) // int(stride) + 1


def pad_by_repetition(tokens: np.ndarray, min_len: int) -> np.ndarray:
    """Append whole copies of `tokens` until the length reaches `min_len`.

    :param np.ndarray tokens: Original token sequence (non-empty).
    :param int min_len: Required minimum length.
    :raises ValueError: If tokens is empty.
    :return np.ndarray: Padded sequence (the input itself if already long enough).
    """
    if tokens.size == 0:
        raise ValueError("cannot pad an empty token sequence")
    if tokens.size >= min_len:
        return tokens
    copies = math.ceil(min_len / tokens.size)
    return np.tile(tokens, copies)


@dataclass(frozen=True)
class TokenDataset:
    """Windowed training examples.

    `examples` has shape [ndata, n_ctx + 1]; row i starts at i * stride in the
    padded token stream.
    """

    examples: np.ndarray
    n_ctx: int
    stride: int
    n_source_tokens: int
    n_padded_tokens: int

    @property
    def ndata(self) -> int:
        return int(self.examples.shape[0])

    def inputs(self, i: int) -> np.ndarray:
        return self.examples[i, :-1]

    def targets(self, i: int) -> np.ndarray:
        return self.examples[i, 1:]


def build_dataset(tokens: Sequence[int] | np.ndarray, n_ctx: int) -> TokenDataset:
    """Turn a tokenized training text into fixed-stride windows.

    :param tokens: Token ids (already BOS-prefixed by the tokenizer call).
    :param int n_ctx: Context size; each window holds n_ctx + 1 tokens.
    :raises TrainingTextTooShort: If fewer than 2 tokens were given.
    :raises ValueError: If n_ctx < 1.
    :return TokenDataset: The windowed dataset (ndata >= 1).
    """
    if n_ctx < 1:
        raise ValueError(f"n_ctx must be >= 1, got {n_ctx}")

    arr = np.asarray(list(tokens) if not isinstance(tokens, np.ndarray) else tokens, dtype=np.int32)
    if arr.size < 2:
        raise TrainingTextTooShort(f"Training text too short: {arr.size} token(s), need at least 2")

    stride = compute_stride(n_ctx)
    need = min_window_tokens(n_ctx, stride)
    padded = pad_by_repetition(arr, need)
    if padded.size != arr.size:
        logger.info("Padded tokens: %d -> %d (min needed: %d)", arr.size, padded.size, need)

    span = n_ctx + 1
    ndata = count_windows(int(padded.size), n_ctx, stride)
    windows = np.lib.stride_tricks.sliding_window_view(padded, span)[::stride][:ndata]
    examples = np.ascontiguousarray(windows, dtype=np.int32)

    logger.info("Dataset: %d data points, stride=%d, ctx=%d", ndata, stride, n_ctx)
    return TokenDataset(
        examples=examples,
        n_ctx=int(n_ctx),
        stride=int(stride),
        n_source_tokens=int(arr.size),
        n_padded_tokens=int(padded.size),
    )


@dataclass(frozen=True)
class EpochSplit:
    """Train/eval partition of one epoch: [0, split_index) trains, the rest evaluates."""

    ndata: int
    split_index: int

    @property
    def has_eval(self) -> bool:
        return self.split_index < self.ndata

    @property
    def n_eval(self) -> int:
        return self.ndata - self.split_index


def epoch_split(ndata: int, *, train_fraction: float = 0.95) -> EpochSplit:
    """Compute the train/eval split for an epoch.

    ndata >= 2: split = max(1, min(ndata - 1, floor(ndata * train_fraction))),
    which always leaves at least one eval example.
    ndata == 1: everything trains and eval is skipped.

    :param int ndata: Number of examples.
    :param float train_fraction: Fraction of examples used for training.
    :raises ValueError: If ndata < 1.
    :return EpochSplit: The split.
    """
    if ndata < 1:
        raise ValueError(f"ndata must be >= 1, got {ndata}")
    if ndata == 1:
        return EpochSplit(ndata=1, split_index=1)
    # Small epsilon keeps e.g. 20 * 0.95 from flooring to 18
    split = math.floor(ndata * float(train_fraction) + 1e-9)
    split = max(1, min(ndata - 1, split))
    return EpochSplit(ndata=int(ndata), split_index=int(split))
