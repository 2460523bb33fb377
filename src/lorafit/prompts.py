"""ChatML prompt building.

    <|im_start|>system
    You are helpful.<|im_end|>
    <|im_start|>user
    Hi<|im_end|>
    <|im_start|>assistant

The prompt always ends with an open assistant turn. Pair it with
`<|im_end|>` as a stop token/string so the reply ends where the turn does.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal

Role = Literal["system", "user", "assistant"]

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str


def format_turn(role: str, content: str) -> str:
    return f"{IM_START}{role}\n{content}{IM_END}\n"


def build_chatml_prompt(messages: Iterable[Message], *, system: str | None = None) -> str:
    """Render a conversation as a ChatML prompt ending in an open assistant turn.

    :param messages: Conversation so far, oldest first.
    :param system: Optional system prompt (skipped when empty).
    :raises ValueError: If a message has an unknown role.
    :return str: The prompt.
    """
    parts: list[str] = []
    if system:
        parts.append(format_turn("system", system))
    for m in messages:
        if m.role not in ("system", "user", "assistant"):
            raise ValueError(f"Unknown chat role: {m.role!r}")
        parts.append(format_turn(m.role, m.content))
    parts.append(f"{IM_START}assistant\n")
    return "".join(parts)


def chat_messages(pairs: Sequence[tuple[str, str]]) -> list[Message]:
    """[(role, content), ...] -> [Message, ...]."""
    return [Message(role=r, content=c) for r, c in pairs]  # type: ignore[arg-type]
