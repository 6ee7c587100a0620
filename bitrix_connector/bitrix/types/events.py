from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class EventType(str, Enum):
    MESSAGE = "message"
    COMMAND = "command"
    BOT_DELETED = "bot_deleted"
    OTHER = "other"


MESSAGE_EVENTS = frozenset({"ONIMMESSAGEADD", "ONIMBOTMESSAGEADD"})
COMMAND_EVENTS = frozenset({"ONIMCOMMANDADD"})
BOT_DELETE_EVENTS = frozenset({"ONIMBOTDELETE"})


def classify_event(name: str) -> EventType:
    upper = (name or "").strip().upper()
    if upper in MESSAGE_EVENTS:
        return EventType.MESSAGE
    if upper in COMMAND_EVENTS:
        return EventType.COMMAND
    if upper in BOT_DELETE_EVENTS:
        return EventType.BOT_DELETED
    return EventType.OTHER


@dataclass(frozen=True, slots=True)
class InboundEvent:
    event_type: EventType
    event_name: str
    raw_payload: MappingProxyType[str, Any]

    @property
    def data(self) -> dict[str, Any]:
        data = self.raw_payload.get("data")
        return data if isinstance(data, dict) else {}

    @property
    def ts(self) -> str | None:
        ts = self.raw_payload.get("ts")
        return str(ts) if ts not in (None, "") else None


@dataclass(frozen=True, slots=True)
class MessageEnvelope:
    """Normalized view of a message event; every field stays optional here."""

    sender_id: str | None = None
    sender_name: str | None = None
    dialog_id: str | None = None
    chat_id: str | None = None
    chat_type: str = "P"
    message_id: str | None = None
    text: str = ""
    timestamp_ms: int = 0
    bot_id: str | None = None
    explicit_file_ids: tuple[str, ...] = field(default_factory=tuple)
    ambiguous_file_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_group(self) -> bool:
        return self.chat_type in ("C", "O")

    @property
    def file_ids(self) -> tuple[str, ...]:
        return self.explicit_file_ids + self.ambiguous_file_ids

    @property
    def has_attachment_indicator(self) -> bool:
        return bool(self.file_ids)

    @property
    def is_from_bot(self) -> bool:
        return bool(self.sender_id) and self.sender_id == self.bot_id


@dataclass(frozen=True, slots=True)
class CommandEnvelope(MessageEnvelope):
    command: str | None = None
    command_id: str | None = None
    command_params: str = ""
    command_context: str = "TEXTAREA"

    @property
    def command_text(self) -> str:
        if self.command_params:
            return f"/{self.command} {self.command_params}"
        return f"/{self.command}"
