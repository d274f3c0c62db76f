"""
Conversation history normalization.

The caller sends the whole conversation on every request; this module turns
the raw ``{role, content}`` list into typed, immutable turns and LangChain
messages without reordering, dropping or reclassifying anything.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from langchain_core.messages import AIMessage, BaseMessage, ChatMessage, HumanMessage

from .errors import ValidationError
from .observability import get_logger

logger = get_logger(__name__)


class TurnKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    LABELED = "labeled"


@dataclass(frozen=True)
class ConversationTurn:
    kind: TurnKind
    role: str
    content: str

    def to_message(self) -> BaseMessage:
        if self.kind is TurnKind.USER:
            return HumanMessage(content=self.content)
        if self.kind is TurnKind.ASSISTANT:
            return AIMessage(content=self.content)
        return ChatMessage(role=self.role, content=self.content)


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def normalize_turn(raw: Any, position: int = 0) -> ConversationTurn:
    role = _field(raw, "role")
    content = _field(raw, "content")
    if not isinstance(role, str) or not role.strip():
        raise ValidationError(f"Message {position} has no role.")
    if not isinstance(content, str):
        raise ValidationError(f"Message {position} has no text content.")

    role = role.strip()
    if role == TurnKind.USER.value:
        return ConversationTurn(TurnKind.USER, role, content)
    if role == TurnKind.ASSISTANT.value:
        return ConversationTurn(TurnKind.ASSISTANT, role, content)
    logger.warning("unknown_message_role", role=role, position=position)
    return ConversationTurn(TurnKind.LABELED, role, content)


def normalize_history(raw_turns: Iterable[Any] | None) -> list[ConversationTurn]:
    """Converts raw caller turns into ConversationTurns, preserving order.

    Raises ValidationError when there are no turns at all or when the newest
    turn is blank: a request must carry the new question.
    """
    turns = [normalize_turn(raw, idx) for idx, raw in enumerate(raw_turns or [])]
    if not turns:
        raise ValidationError("No messages provided.")
    if not turns[-1].content.strip():
        raise ValidationError("The newest message has no question text.")
    return turns


def to_messages(turns: Iterable[ConversationTurn]) -> list[BaseMessage]:
    return [turn.to_message() for turn in turns]
