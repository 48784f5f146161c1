"""Chat-markup prompt construction.

Every turn renders as a role tag, a newline, the turn text, and a newline.
The prompt ends with an empty assistant tag, which tells the model where to
continue. A single user turn therefore renders as::

    <|user|>
    hi
    <|assistant|>

"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

ROLES = frozenset({"user", "assistant"})

# Tags the model emits when it starts writing a new turn of its own.
STOP_SEQUENCES: tuple[str, ...] = ("<|user|>", "<|assistant|>", "<|system|>", "</s>")


def role_tag(role: str) -> str:
    return f"<|{role}|>"


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    """One prior message in the conversation."""

    role: str
    text: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {sorted(ROLES)}, got {self.role!r}")

    @classmethod
    def user(cls, text: str) -> ConversationTurn:
        return cls("user", text)

    @classmethod
    def assistant(cls, text: str) -> ConversationTurn:
        return cls("assistant", text)


def build_prompt(turns: Sequence[ConversationTurn], system_prompt: str | None = None) -> str:
    """Serialize turns into a single chat-markup prompt string.

    Args:
        turns: Ordered prior turns, normally ending with the new user turn.
        system_prompt: Optional instructions rendered as a leading system turn.

    Raises:
        ValueError: ``turns`` is empty.
    """
    if not turns:
        raise ValueError("Cannot build a prompt from an empty conversation")

    parts: list[str] = []
    if system_prompt:
        parts.append(f"{role_tag('system')}\n{system_prompt}\n")
    for turn in turns:
        parts.append(f"{role_tag(turn.role)}\n{turn.text}\n")
    parts.append(f"{role_tag('assistant')}\n")
    return "".join(parts)


@dataclass
class Conversation:
    """Growable transcript of turns for a warm, stateful session."""

    turns: list[ConversationTurn] = field(default_factory=list)

    def add_user(self, text: str) -> ConversationTurn:
        turn = ConversationTurn.user(text)
        self.turns.append(turn)
        return turn

    def add_assistant(self, text: str) -> ConversationTurn:
        turn = ConversationTurn.assistant(text)
        self.turns.append(turn)
        return turn

    def clear(self) -> None:
        self.turns.clear()

    def __len__(self) -> int:
        return len(self.turns)
