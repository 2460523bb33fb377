"""lorafit: generation + LoRA fine-tuning orchestration around an inference engine.

The engine (tokenizer, decode, sampler primitives, optimizer step) is a black box
behind `lorafit.engine.Engine`. This package owns everything around it:

- chunked prompt prefill + token-by-token decode
- stop detection (end-of-generation tokens, stop tokens, stop strings)
- UTF-8 safe incremental streaming
- dataset windowing + epoch split + adapter-only training epochs

`lorafit.model.JaxEngine` is the reference engine (tiny Equinox LM + LoRA).
"""

from __future__ import annotations

try:
    from lorafit._version import __version__
except ImportError:
    __version__ = "0.0.0+unknown"

__all__ = ["__version__"]
