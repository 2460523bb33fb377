# SPDX-License-Identifier: Apache-2.0

"""Configuration for lorafit.

Rule #1: **One config system.**
If a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is strict about *keys* (a mis-typed key fails fast) and lenient about
a few *values*: the engine-facing knobs that the original device app exposed as
"0 = auto" (threads, context size, max tokens) resolve to documented defaults
through the `resolve_*` helpers at the bottom of this file.
"""

from __future__ import annotations

import os
import re
import warnings
from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Literal

import yaml

TokenizerKind = Literal["byte", "hf"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_INFERENCE_CTX = 2048
DEFAULT_TRAINING_CTX = 512
DEFAULT_MAX_TOKENS = 128

# Chat-template markers that usually exist as single special tokens.
# ChatML, Llama 3, Gemma, Phi.
DEFAULT_STOP_TOKEN_MARKERS: tuple[str, ...] = (
    "<|im_end|>",
    "<|im_start|>",
    "<|eot_id|>",
    "<|start_header_id|>",
    "<end_of_turn>",
    "<start_of_turn>",
    "<|end|>",
    "<|user|>",
    "<|assistant|>",
)

DEFAULT_SPECIAL_TOKENS: tuple[str, ...] = (
    "<pad>",
    "<s>",
    "</s>",
    *DEFAULT_STOP_TOKEN_MARKERS,
)


@dataclass(frozen=True)
class ModelConfig:
    """Model + context configuration.

    `n_threads`, `n_ctx` <= 0 mean "auto" (see resolve_n_threads / resolve_n_ctx).

    The architecture fields only matter for the reference JAX engine when a
    fresh model is initialized (`lorafit init-model`); a saved model carries
    its own architecture in `model_config.json`.
    """

    path: str | None = None

    n_threads: int = 0
    n_ctx: int = 0
    n_gpu_layers: int = 0

    # Inference context batch limits (training contexts use n_ctx for both)
    n_batch: int = 512
    n_ubatch: int = 256

    # Reference engine architecture
    vocab_size: int = 272
    d_model: int = 64
    num_layers: int = 2
    init_seed: int = 0
    param_dtype: Literal["float32", "bfloat16"] = "float32"


@dataclass(frozen=True)
class TokenizerConfig:
    """Tokenizer configuration.

    - kind='byte': UTF-8 bytes mapped to [byte_offset, byte_offset+256), with
      ids [0, byte_offset) reserved for `special_tokens` (in order).
    - kind='hf': Hugging Face tokenizer via transformers.AutoTokenizer.

    Byte mode is what the reference engine ships with: no downloads, and
    multi-byte characters really do arrive split across tokens, which is exactly
    what the streaming path has to survive.
    """

    kind: TokenizerKind = "byte"

    hf_name_or_path: str | None = None
    hf_use_fast: bool = True
    hf_trust_remote_code: bool = False

    byte_offset: int = 16
    special_tokens: tuple[str, ...] = DEFAULT_SPECIAL_TOKENS
    bos_token: str = "<s>"
    eos_token: str = "</s>"


@dataclass(frozen=True)
class GenerateConfig:
    """Generation defaults.

    temperature <= 0 selects greedy decoding; otherwise the stochastic chain
    top_k -> top_p -> temperature -> draw is used.
    """

    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    seed: int = 0

    # Literal text stop sequences (suffix-matched against generated bytes)
    stop_strings: tuple[str, ...] = ()
    # Markers resolved to single-token stop rules when they tokenize to one token
    stop_token_markers: tuple[str, ...] = DEFAULT_STOP_TOKEN_MARKERS

    stream: bool = True


@dataclass(frozen=True)
class AdapterConfig:
    """LoRA adapter configuration (fresh init) or a path to load from."""

    rank: int = 8
    alpha: float = 16.0
    skip_layers: int = 0
    scale: float = 1.0
    init_path: str | None = None


@dataclass(frozen=True)
class TrainConfig:
    """Adapter training configuration."""

    text_file: str | None = None
    text: str | None = None

    n_ctx: int = 0
    learning_rate: float = 1e-4
    epochs: int = 1
    lr_min_ratio: float = 0.1
    weight_decay: float = 0.0
    train_fraction: float = 0.95
    seed: int = 0

    save_every_epoch: bool = True
    output_adapter: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for run directory and metrics output."""

    project: str = "lorafit"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs."""

    model: ModelConfig = ModelConfig()
    tokenizer: TokenizerConfig = TokenizerConfig()
    generate: GenerateConfig = GenerateConfig()
    adapter: AdapterConfig = AdapterConfig()
    train: TrainConfig = TrainConfig()
    logging: LoggingConfig = LoggingConfig()

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


# ------------------------------ Loading ---------------------------------


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Set a dataclass field by dotted path, returning a new object.

    Example: path="train.epochs", raw_value="4"

    :param Any obj: Root dataclass to modify.
    :param str path: Dot-separated path to the field.
    :param str raw_value: String value, cast to the field's current type.
    :raises ValueError: If the path contains unknown keys.
    :return Any: New dataclass with the field updated.
    """
    parts = path.split(".")
    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ValueError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not hasattr(cur, leaf):
        raise ValueError(f"Unknown config key: {path!r} (missing {leaf!r})")

    new = _cast_like(getattr(cur, leaf), raw_value)

    # Frozen dataclasses: rebuild bottom-up
    cur_new = replace(cur, **{leaf: new})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast a string override to the type of `old`.

    :param Any old: Reference value whose type determines the cast.
    :param str raw: String value to cast.
    :raises ValueError: If the cast fails.
    :return Any: Value cast to the type of `old`.
    """
    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if isinstance(old, tuple):
        # "a,b" or a YAML list literal
        if raw.strip().startswith("["):
            parsed = yaml.safe_load(raw) or []
            return tuple(str(x) for x in parsed)
        return tuple(s for s in (x.strip() for x in raw.split(",")) if s)
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError:
            return raw
        return raw if parsed is None else parsed
    return raw


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load YAML config file + apply dot-path overrides.

    Overrides format: "train.epochs=3".

    :param path: Path to the YAML config file.
    :param overrides: Optional list of dot-path overrides.
    :raises ValueError: If an override is malformed or the config is invalid.
    :return Config: Validated configuration object.
    """
    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}

    data = _resolve_variables(data)
    cfg = apply_overrides(_from_nested_dict(data), overrides)
    validate_config(cfg)
    return cfg


def apply_overrides(cfg: Config, overrides: Iterable[str] | None) -> Config:
    """Apply "a.b=value" overrides to a config (no validation).

    :param Config cfg: Base config.
    :param overrides: Optional list of dot-path overrides.
    :raises ValueError: If an override is malformed or names an unknown key.
    :return Config: New config.
    """
    for o in overrides or ():
        if "=" not in o:
            raise ValueError(f"Invalid override {o!r}. Expected format like train.epochs=3")
        k, v = o.split("=", 1)
        cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())
    return cfg


_VAR_INLINE_RE = re.compile(r"\{\$variables\.([A-Za-z0-9_.-]+)\}")
_VAR_BRACE_RE = re.compile(r"\$\{variables\.([A-Za-z0-9_.-]+)\}")
_VAR_FULL_RE = re.compile(r"\$variables\.([A-Za-z0-9_.-]+)$")
_VAR_SUSPICIOUS_RE = re.compile(r"\$variables\.[A-Za-z0-9_.-]+")


def _resolve_variables(data: dict[str, Any]) -> dict[str, Any]:
    """Expand `$variables.x` references from the top-level `variables:` block.

    - "$variables.n_ctx" -> the referenced value, type preserved
    - "ctx{$variables.n_ctx}" / "ctx${variables.n_ctx}" -> string interpolation

    :param dict[str, Any] data: Raw YAML-loaded data.
    :raises ValueError: If a reference is missing or circular.
    :return dict[str, Any]: Data with variables resolved (variables removed).
    """
    raw_vars = data.get("variables") or {}
    if not isinstance(raw_vars, dict):
        raise ValueError("variables must be a mapping if provided")

    resolved: dict[str, Any] = {}
    resolving: list[str] = []

    def _lookup(path: str) -> Any:
        if path in resolved:
            return resolved[path]
        if path in resolving:
            raise ValueError(f"Circular variable reference: {' -> '.join(resolving + [path])}")
        cur: Any = raw_vars
        for part in path.split("."):
            if not isinstance(cur, dict) or part not in cur:
                raise ValueError(f"Unknown variable reference: variables.{path}")
            cur = cur[part]
        resolving.append(path)
        value = _resolve(cur)
        resolving.pop()
        resolved[path] = value
        return value

    def _sub(match: re.Match[str]) -> str:
        return str(_lookup(match.group(1)))

    def _resolve(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_resolve(v) for v in value]
        if isinstance(value, str):
            full = _VAR_FULL_RE.fullmatch(value)
            if full:
                return _lookup(full.group(1))
            out = _VAR_BRACE_RE.sub(_sub, _VAR_INLINE_RE.sub(_sub, value))
            leftover = _VAR_SUSPICIOUS_RE.findall(out)
            if leftover:
                warnings.warn(
                    f"String contains unresolved variable-like patterns: {leftover}. "
                    "Use {$variables.name} or ${variables.name} for inline substitution.",
                    stacklevel=2,
                )
            return out
        return value

    return {k: _resolve(v) for k, v in data.items() if k != "variables"}


def _build(cls: type, raw: Any, section: str) -> Any:
    """Build one config section, converting YAML lists to tuples.

    :param type cls: Dataclass type for the section.
    :param Any raw: Mapping from YAML (or None).
    :param str section: Section name for error messages.
    :raises ValueError: On unknown keys.
    :return Any: Constructed dataclass.
    """
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config section {section!r} must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown config key(s) in {section!r}: {unknown}")
    kwargs = {k: tuple(v) if isinstance(v, list) else v for k, v in raw.items()}
    return cls(**kwargs)


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Convert nested dict into Config dataclasses.

    :param dict[str, Any] data: Nested dictionary from YAML parsing.
    :raises ValueError: On unknown top-level sections.
    :return Config: Fully constructed Config.
    """
    sections = {
        "model": ModelConfig,
        "tokenizer": TokenizerConfig,
        "generate": GenerateConfig,
        "adapter": AdapterConfig,
        "train": TrainConfig,
        "logging": LoggingConfig,
    }
    unknown = sorted(set(data) - set(sections))
    if unknown:
        raise ValueError(f"Unknown config section(s): {unknown}")
    return Config(**{name: _build(cls, data.get(name), name) for name, cls in sections.items()})


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ValueError with a standardized config validation prefix.

    :param str msg: Validation failure message.
    :raises ValueError: Always.
    """
    raise ValueError(f"Config validation failed: {msg}")


def _validate_model(cfg: Config) -> None:
    m = cfg.model
    if m.n_batch <= 0:
        _vfail(f"model.n_batch must be positive, got {m.n_batch}")
    if m.n_ubatch <= 0:
        _vfail(f"model.n_ubatch must be positive, got {m.n_ubatch}")
    if m.n_gpu_layers < 0:
        _vfail(f"model.n_gpu_layers must be >= 0, got {m.n_gpu_layers}")
    if m.vocab_size <= 0:
        _vfail(f"model.vocab_size must be positive, got {m.vocab_size}")
    if m.d_model <= 0:
        _vfail(f"model.d_model must be positive, got {m.d_model}")
    if m.num_layers <= 0:
        _vfail(f"model.num_layers must be positive, got {m.num_layers}")


def _validate_tokenizer(cfg: Config) -> None:
    tok = cfg.tokenizer
    if tok.kind == "hf":
        if not tok.hf_name_or_path:
            _vfail("tokenizer.hf_name_or_path must be set when tokenizer.kind='hf'")
        return
    if tok.kind != "byte":
        _vfail(f"tokenizer.kind must be 'byte' or 'hf', got {tok.kind!r}")
    if tok.byte_offset < 0:
        _vfail(f"tokenizer.byte_offset must be >= 0, got {tok.byte_offset}")
    if len(tok.special_tokens) > tok.byte_offset:
        _vfail(
            f"tokenizer.special_tokens has {len(tok.special_tokens)} entries but "
            f"byte_offset={tok.byte_offset} reserves only that many ids"
        )
    if len(set(tok.special_tokens)) != len(tok.special_tokens):
        _vfail("tokenizer.special_tokens must be unique")
    for name in ("bos_token", "eos_token"):
        value = getattr(tok, name)
        if value not in tok.special_tokens:
            _vfail(f"tokenizer.{name}={value!r} must be one of tokenizer.special_tokens")
    min_vocab = tok.byte_offset + 256
    if cfg.model.vocab_size < min_vocab:
        _vfail(
            f"model.vocab_size ({cfg.model.vocab_size}) must be >= byte_offset+256 ({min_vocab}) "
            "when using byte tokenizer"
        )


def _validate_generate(cfg: Config) -> None:
    g = cfg.generate
    if g.top_k <= 0:
        _vfail(f"generate.top_k must be positive, got {g.top_k}")
    if g.top_p <= 0 or g.top_p > 1:
        _vfail(f"generate.top_p must be in (0, 1], got {g.top_p}")
    if any(not s for s in g.stop_strings):
        _vfail("generate.stop_strings must not contain empty strings")


def _validate_adapter(cfg: Config) -> None:
    a = cfg.adapter
    if a.rank <= 0:
        _vfail(f"adapter.rank must be positive, got {a.rank}")
    if a.alpha <= 0:
        _vfail(f"adapter.alpha must be positive, got {a.alpha}")
    if a.skip_layers < 0:
        _vfail(f"adapter.skip_layers must be >= 0, got {a.skip_layers}")
    if a.skip_layers >= cfg.model.num_layers:
        _vfail(
            f"adapter.skip_layers ({a.skip_layers}) must be < model.num_layers "
            f"({cfg.model.num_layers}), otherwise the adapter has no tensors"
        )


def _validate_train(cfg: Config) -> None:
    t = cfg.train
    if t.epochs <= 0:
        _vfail(f"train.epochs must be positive, got {t.epochs}")
    if t.learning_rate <= 0:
        _vfail(f"train.learning_rate must be positive, got {t.learning_rate}")
    if t.lr_min_ratio < 0 or t.lr_min_ratio > 1:
        _vfail(f"train.lr_min_ratio must be in [0, 1], got {t.lr_min_ratio}")
    if t.weight_decay < 0:
        _vfail(f"train.weight_decay must be >= 0, got {t.weight_decay}")
    if t.train_fraction <= 0 or t.train_fraction > 1:
        _vfail(f"train.train_fraction must be in (0, 1], got {t.train_fraction}")
    if t.text_file is not None and t.text is not None:
        _vfail("set at most one of train.text_file / train.text")


def _validate_logging(cfg: Config) -> None:
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_model(cfg)
    _validate_tokenizer(cfg)
    _validate_generate(cfg)
    _validate_adapter(cfg)
    _validate_train(cfg)
    _validate_logging(cfg)


# ------------------------------ Resolution ---------------------------------


def resolve_n_threads(n_threads: int, *, cpu_count: int | None = None) -> int:
    """Resolve a thread count; <= 0 means max(2, cores - 2).

    :param int n_threads: Requested thread count.
    :param cpu_count: Override for the detected core count (tests).
    :return int: Thread count to use.
    """
    if n_threads > 0:
        return int(n_threads)
    cores = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(2, int(cores) - 2)


def resolve_n_ctx(n_ctx: int, *, training: bool) -> int:
    """Resolve a context size; <= 0 means 512 for training, 2048 for inference.

    :param int n_ctx: Requested context size.
    :param bool training: Whether the context is for training.
    :return int: Context size to use.
    """
    if n_ctx > 0:
        return int(n_ctx)
    return DEFAULT_TRAINING_CTX if training else DEFAULT_INFERENCE_CTX


def resolve_max_tokens(max_tokens: int) -> int:
    """Resolve a generation budget; <= 0 means 128.

    :param int max_tokens: Requested budget.
    :return int: Token budget to use.
    """
    return int(max_tokens) if max_tokens > 0 else DEFAULT_MAX_TOKENS
