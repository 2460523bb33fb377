"""Dataset windowing and epoch split tests."""

from __future__ import annotations

import numpy as np
import pytest

from lorafit.data.window import (
    build_dataset,
    compute_stride,
    count_windows,
    epoch_split,
    min_window_tokens,
    pad_by_repetition,
)
from lorafit.errors import TrainingTextTooShort


def test_short_text_is_padded_by_whole_repetition() -> None:
    """10 tokens, n_ctx=8: stride 4, padded to 20, 3 windows."""
    tokens = np.arange(100, 110)
    ds = build_dataset(tokens, n_ctx=8)

    assert ds.stride == 4
    assert ds.n_source_tokens == 10
    assert ds.n_padded_tokens == 20
    assert ds.ndata == 3
    assert ds.examples.shape == (3, 9)
    # Row i starts at i * stride in the repeated stream
    stream = np.tile(tokens, 2)
    for i in range(3):
        np.testing.assert_array_equal(ds.examples[i], stream[i * 4 : i * 4 + 9])


def test_windows_stay_inside_the_stream() -> None:
    tokens = np.arange(1000)
    ds = build_dataset(tokens, n_ctx=64)
    assert ds.n_padded_tokens == 1000
    assert ds.ndata == (1000 - 65) // 32 + 1
    last_start = (ds.ndata - 1) * ds.stride
    assert last_start + 65 <= 1000
    np.testing.assert_array_equal(ds.inputs(1), tokens[32:96])
    np.testing.assert_array_equal(ds.targets(1), tokens[33:97])


def test_minimum_two_tokens() -> None:
    with pytest.raises(TrainingTextTooShort):
        build_dataset([1], n_ctx=8)
    with pytest.raises(TrainingTextTooShort):
        build_dataset([], n_ctx=8)
    ds = build_dataset([1, 2], n_ctx=8)
    assert ds.ndata >= 1


@pytest.mark.parametrize("n_ctx", range(1, 65))
def test_every_short_text_yields_fitting_windows(n_ctx: int) -> None:
    span = n_ctx + 1
    for length in range(2, 41):
        tokens = np.arange(1000, 1000 + length)
        ds = build_dataset(tokens, n_ctx=n_ctx)

        assert ds.ndata >= 1
        assert ds.examples.shape == (ds.ndata, span)
        assert (ds.ndata - 1) * ds.stride + span <= ds.n_padded_tokens
        if ds.n_padded_tokens != length:
            assert ds.n_padded_tokens % ds.n_source_tokens == 0
            assert ds.n_padded_tokens >= min_window_tokens(n_ctx, ds.stride)
        stream = np.tile(tokens, ds.n_padded_tokens // length)
        for i in (0, ds.ndata - 1):
            np.testing.assert_array_equal(ds.examples[i], stream[i * ds.stride : i * ds.stride + span])


def test_helpers() -> None:
    assert compute_stride(1) == 1
    assert compute_stride(3) == 1
    assert compute_stride(512) == 256
    assert min_window_tokens(8, 4) == 13
    assert count_windows(8, 8, 4) == 0
    assert count_windows(9, 8, 4) == 1
    padded = pad_by_repetition(np.array([1, 2, 3]), 7)
    np.testing.assert_array_equal(padded, [1, 2, 3, 1, 2, 3, 1, 2, 3])
    with pytest.raises(ValueError):
        pad_by_repetition(np.array([], dtype=np.int32), 3)


@pytest.mark.parametrize(
    ("ndata", "fraction", "split"),
    [(1, 0.95, 1), (2, 0.95, 1), (3, 0.95, 2), (20, 0.95, 19), (100, 0.95, 95), (10, 1.0, 9), (10, 0.01, 1)],
)
def test_epoch_split(ndata: int, fraction: float, split: int) -> None:
    s = epoch_split(ndata, train_fraction=fraction)
    assert s.split_index == split
    assert 1 <= s.split_index <= ndata
    if ndata >= 2:
        assert s.has_eval and s.n_eval >= 1
    else:
        assert not s.has_eval


def test_epoch_split_rejects_empty() -> None:
    with pytest.raises(ValueError):
        epoch_split(0)
