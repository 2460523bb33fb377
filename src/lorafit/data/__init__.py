"""Data handling for lorafit.

- tokenizers (byte-level with reserved specials, Hugging Face wrapper)
- training-text windowing + the per-epoch train/eval split
"""

from __future__ import annotations

from .tokenizer import ByteTokenizer, HFTokenizer, Tokenizer, build_tokenizer
from .window import EpochSplit, TokenDataset, build_dataset, compute_stride, epoch_split

__all__ = [
    "ByteTokenizer",
    "EpochSplit",
    "HFTokenizer",
    "TokenDataset",
    "Tokenizer",
    "build_dataset",
    "build_tokenizer",
    "compute_stride",
    "epoch_split",
]
