from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .attachment import Attachment

CHANNEL = "bitrix24"


@dataclass(frozen=True, slots=True)
class DispatchContext:
    body: str
    raw_body: str
    command_body: str
    from_address: str
    to_address: str
    session_key: str
    account_id: str
    chat_type: str
    conversation_label: str
    sender_id: str
    sender_name: str
    message_sid: str
    timestamp_ms: int
    group_subject: str | None = None
    provider: str = CHANNEL
    surface: str = CHANNEL
    originating_channel: str = CHANNEL
    originating_to: str | None = None
    agent_id: str | None = None
    dm_policy: str = "open"
    command_args: dict[str, str] | None = None
    command_source: str | None = None
    was_mentioned: bool = False
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)

    def as_fields(self) -> dict[str, Any]:
        """Host-style field map handed to ``ContextFormatter.finalize_context``."""
        fields: dict[str, Any] = {
            "Body": self.body,
            "RawBody": self.raw_body,
            "CommandBody": self.command_body,
            "From": self.from_address,
            "To": self.to_address,
            "SessionKey": self.session_key,
            "AccountId": self.account_id,
            "ChatType": self.chat_type,
            "DmPolicy": self.dm_policy,
            "ConversationLabel": self.conversation_label,
            "GroupSubject": self.group_subject,
            "SenderId": self.sender_id,
            "SenderName": self.sender_name,
            "Provider": self.provider,
            "Surface": self.surface,
            "MessageSid": self.message_sid,
            "Timestamp": self.timestamp_ms,
            "OriginatingChannel": self.originating_channel,
            "OriginatingTo": self.originating_to or self.to_address,
        }
        if self.command_args is not None:
            fields["CommandArgs"] = self.command_args
        if self.command_source:
            fields["CommandSource"] = self.command_source
        if self.was_mentioned:
            fields["WasMentioned"] = True
        return {k: v for k, v in fields.items() if v is not None}


@dataclass(frozen=True, slots=True)
class DeliveryPayload:
    text: str
    media_url: str | None = None

    @classmethod
    def from_output(cls, payload: Any) -> DeliveryPayload:
        """Read agent output tolerantly: ``text``, then ``body``, then ``content``."""
        if isinstance(payload, str):
            return cls(text=payload)
        if isinstance(payload, dict):
            getter = payload.get
        else:
            def getter(key: str, default: Any = None) -> Any:
                return getattr(payload, key, default)
        text = getter("text") or getter("body") or getter("content") or ""
        media_url = getter("media_url") or getter("mediaUrl")
        return cls(text=str(text), media_url=str(media_url) if media_url else None)

    @property
    def message_text(self) -> str:
        """Text to send; a media URL rides along as a trailing link."""
        if not self.media_url:
            return self.text
        if not self.text.strip():
            return self.media_url
        return f"{self.text}\n\n{self.media_url}"

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.media_url
