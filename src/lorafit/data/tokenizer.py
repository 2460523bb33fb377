"""Tokenizers for lorafit.

Two implementations of one small protocol:

- `ByteTokenizer`: UTF-8 bytes + a reserved block of special tokens. No files,
  no downloads. A multi-byte character becomes several tokens, so the streaming
  path sees genuinely incomplete UTF-8 fragments.
- `HFTokenizer`: Hugging Face `AutoTokenizer` wrapper.

The engine owns the tokenizer; orchestration code only ever goes through
`Engine.tokenize` / `Engine.token_to_piece` / `Engine.is_eog`.
"""

from __future__ import annotations

import functools
import json
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from lorafit.config import DEFAULT_SPECIAL_TOKENS, TokenizerConfig


class Tokenizer(Protocol):
    """Protocol for tokenizers used by the reference engine."""

    def encode(self, text: str, *, add_bos: bool = False, parse_special: bool = False) -> list[int]:
        """Encode text to token ids."""
        ...

    def token_to_piece(self, token: int, *, special: bool = True) -> bytes:
        """Return the raw byte fragment for one token."""
        ...

    def is_eog(self, token: int) -> bool:
        """True if the token ends generation."""
        ...

    def __len__(self) -> int: ...


@dataclass
class ByteTokenizer:
    """A tiny byte-level tokenizer with reserved special-token ids.

    ids [0, len(special_tokens)) are the special tokens, in order;
    ids [byte_offset, byte_offset + 256) are raw bytes.
    """

    byte_offset: int = 16
    special_tokens: tuple[str, ...] = DEFAULT_SPECIAL_TOKENS
    bos_token: str = "<s>"
    eos_token: str = "</s>"
    _ids: dict[str, int] = field(init=False, repr=False)
    _special_re: re.Pattern[str] | None = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if len(self.special_tokens) > self.byte_offset:
            raise ValueError(
                f"{len(self.special_tokens)} special tokens do not fit below byte_offset={self.byte_offset}"
            )
        self._ids = {tok: i for i, tok in enumerate(self.special_tokens)}
        # Longest first so "<|im_start|>" wins over any prefix of it
        ordered = sorted(self.special_tokens, key=len, reverse=True)
        self._special_re = re.compile("|".join(re.escape(s) for s in ordered)) if ordered else None

    @property
    def bos_token_id(self) -> int:
        return self._ids[self.bos_token]

    @property
    def eos_token_id(self) -> int:
        return self._ids[self.eos_token]

    def special_id(self, text: str) -> int | None:
        return self._ids.get(text)

    def _encode_bytes(self, text: str) -> list[int]:
        off = int(self.byte_offset)
        return [off + int(b) for b in text.encode("utf-8", errors="replace")]

    def encode(self, text: str, *, add_bos: bool = False, parse_special: bool = False) -> list[int]:
        """Encode text to token ids.

        :param str text: Input text.
        :param bool add_bos: Prepend the BOS token.
        :param bool parse_special: Map special-token text to its reserved id
            instead of spelling it out in bytes.
        :return list[int]: Token ids.
        """
        ids: list[int] = [self.bos_token_id] if add_bos else []
        if not parse_special or self._special_re is None:
            ids.extend(self._encode_bytes(text))
            return ids

        cursor = 0
        for m in self._special_re.finditer(text):
            ids.extend(self._encode_bytes(text[cursor : m.start()]))
            ids.append(self._ids[m.group(0)])
            cursor = m.end()
        ids.extend(self._encode_bytes(text[cursor:]))
        return ids

    def token_to_piece(self, token: int, *, special: bool = True) -> bytes:
        """Return the byte fragment for a token.

        :param int token: Token id.
        :param bool special: Render special tokens as their text (else empty).
        :raises ValueError: If the id is outside the vocabulary.
        :return bytes: The fragment (a single byte for byte tokens).
        """
        token = int(token)
        if token >= self.byte_offset:
            raw = token - self.byte_offset
            if raw > 255:
                raise ValueError(f"token id {token} outside byte vocabulary")
            return bytes([raw])
        if token < 0:
            raise ValueError(f"negative token id {token}")
        if token < len(self.special_tokens):
            return self.special_tokens[token].encode("utf-8") if special else b""
        return b""

    def decode(self, ids: list[int], *, skip_special: bool = True) -> str:
        """Decode token ids back to text.

        :param ids: Token ids.
        :param bool skip_special: Drop special tokens instead of rendering them.
        :return str: Decoded text (invalid UTF-8 replaced).
        """
        out = b"".join(self.token_to_piece(t, special=not skip_special) for t in ids)
        return out.decode("utf-8", errors="replace")

    def is_eog(self, token: int) -> bool:
        return int(token) == self.eos_token_id

    def to_config(self) -> dict[str, Any]:
        return {
            "kind": "byte",
            "byte_offset": int(self.byte_offset),
            "special_tokens": list(self.special_tokens),
            "bos_token": self.bos_token,
            "eos_token": self.eos_token,
        }

    def __len__(self) -> int:
        return int(self.byte_offset) + 256


@functools.lru_cache(maxsize=1)
def byte_level_decoder() -> dict[str, int]:
    """Printable-character -> byte table used by GPT-2 style byte-level BPE."""
    printable = [*range(ord("!"), ord("~") + 1), *range(ord("\xa1"), ord("\xac") + 1), *range(ord("\xae"), 256)]
    chars = list(printable)
    shift = 0
    for b in range(256):
        if b not in printable:
            printable.append(b)
            chars.append(256 + shift)
            shift += 1
    return {chr(c): b for b, c in zip(printable, chars)}


_BYTE_FALLBACK = re.compile(r"<0x([0-9A-Fa-f]{2})>")


class HFTokenizer:
    """Hugging Face tokenizer wrapper.

    Requires `transformers`.
    """

    def __init__(self, name_or_path: str, *, use_fast: bool, trust_remote_code: bool):
        """Initialize a Hugging Face tokenizer from a name or local path.

        :param str name_or_path: Hugging Face model name or local path.
        :param bool use_fast: Whether to use the fast Rust tokenizer.
        :param bool trust_remote_code: Whether to allow custom tokenizer code.
        :raises ImportError: If transformers is not installed.
        """
        try:
            from transformers import AutoTokenizer
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "HFTokenizer requires transformers. Install with: pip install transformers tokenizers"
            ) from e

        self.name_or_path = name_or_path
        self.use_fast = use_fast
        self.trust_remote_code = trust_remote_code
        self._tok = AutoTokenizer.from_pretrained(
            name_or_path,
            use_fast=use_fast,
            trust_remote_code=trust_remote_code,
        )
        self._special_ids = {int(i) for i in self._tok.all_special_ids}
        self._added = {int(i): t.content for i, t in getattr(self._tok, "added_tokens_decoder", {}).items()}
        self._byte_decoder = self._find_byte_decoder()

    def _find_byte_decoder(self) -> dict[str, int] | None:
        # Slow GPT-2 style tokenizers carry the table; fast ones declare a ByteLevel decoder
        table = getattr(self._tok, "byte_decoder", None)
        if table:
            return dict(table)
        backend = getattr(self._tok, "backend_tokenizer", None)
        if backend is None:
            return None
        decoder = json.loads(backend.to_str()).get("decoder")
        if '"ByteLevel"' in json.dumps(decoder):
            return byte_level_decoder()
        return None

    def encode(self, text: str, *, add_bos: bool = False, parse_special: bool = False) -> list[int]:
        """Encode text to token ids.

        :param str text: Input text.
        :param bool add_bos: Prepend the tokenizer's BOS token when it has one.
        :param bool parse_special: Let special-token text map to special ids.
        :raises RuntimeError: If the tokenizer does not return input_ids.
        :return list[int]: Token ids.
        """
        out = self._tok(text, add_special_tokens=False, split_special_tokens=not parse_special)
        ids = out.get("input_ids")
        if ids is None:
            raise RuntimeError("Tokenizer did not return input_ids")
        ids = [int(i) for i in ids]
        bos = self._tok.bos_token_id
        if add_bos and bos is not None:
            ids.insert(0, int(bos))
        return ids

    def token_to_piece(self, token: int, *, special: bool = True) -> bytes:
        """Return the raw bytes a token stands for.

        Byte-level BPE pieces are mapped back through the byte table and
        SentencePiece `<0xNN>` pieces become the byte they name, so a token
        holding part of a UTF-8 character yields exactly that part.

        :param int token: Token id.
        :param bool special: Render special tokens as their text (else empty).
        :return bytes: The fragment.
        """
        token = int(token)
        if token in self._special_ids:
            return self._decode_one(token).encode("utf-8") if special else b""
        if token in self._added:
            return self._added[token].encode("utf-8")

        piece = self._tok.convert_ids_to_tokens(token)
        if piece is None:
            return self._decode_one(token).encode("utf-8")
        if self._byte_decoder is not None and all(c in self._byte_decoder for c in piece):
            return bytes(self._byte_decoder[c] for c in piece)
        m = _BYTE_FALLBACK.fullmatch(piece)
        if m is not None:
            return bytes([int(m.group(1), 16)])
        return piece.replace("▁", " ").encode("utf-8")

    def _decode_one(self, token: int) -> str:
        return self._tok.decode([token], skip_special_tokens=False, clean_up_tokenization_spaces=False)

    def is_eog(self, token: int) -> bool:
        eos = self._tok.eos_token_id
        return eos is not None and int(token) == int(eos)

    def to_config(self) -> dict[str, Any]:
        return {
            "kind": "hf",
            "hf_name_or_path": self.name_or_path,
            "hf_use_fast": self.use_fast,
            "hf_trust_remote_code": self.trust_remote_code,
        }

    def save_pretrained(self, path: str | Path) -> None:
        self._tok.save_pretrained(str(path))

    def __len__(self) -> int:
        return int(len(self._tok))


def build_tokenizer(cfg: TokenizerConfig) -> Tokenizer:
    """Build a tokenizer instance from config.

    :param TokenizerConfig cfg: Tokenizer settings.
    :raises ValueError: If tokenizer kind is unknown.
    :return Tokenizer: Configured tokenizer instance.
    """
    if cfg.kind == "byte":
        return ByteTokenizer(
            byte_offset=cfg.byte_offset,
            special_tokens=tuple(cfg.special_tokens),
            bos_token=cfg.bos_token,
            eos_token=cfg.eos_token,
        )
    if cfg.kind == "hf":
        if not cfg.hf_name_or_path:
            raise ValueError("tokenizer.hf_name_or_path must be set for kind='hf'")
        return HFTokenizer(
            cfg.hf_name_or_path,
            use_fast=cfg.hf_use_fast,
            trust_remote_code=cfg.hf_trust_remote_code,
        )
    raise ValueError(f"Unknown tokenizer.kind: {cfg.kind!r}")


def tokenizer_config_from_dict(d: dict[str, Any]) -> TokenizerConfig:
    """Rebuild a TokenizerConfig from a saved dict (model_config.json).

    :param dict[str, Any] d: Saved tokenizer dict.
    :return TokenizerConfig: Parsed config; unknown keys are ignored.
    """
    known = set(asdict(TokenizerConfig()))
    kwargs = {k: tuple(v) if isinstance(v, list) else v for k, v in d.items() if k in known}
    return TokenizerConfig(**kwargs)
