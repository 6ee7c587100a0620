from __future__ import annotations

from .attachment import Attachment, AttachmentCategory, format_size
from .dispatch import CHANNEL, DeliveryPayload, DispatchContext
from .events import CommandEnvelope, EventType, InboundEvent, MessageEnvelope, classify_event

__all__ = [
    "CHANNEL",
    "Attachment",
    "AttachmentCategory",
    "CommandEnvelope",
    "DeliveryPayload",
    "DispatchContext",
    "EventType",
    "InboundEvent",
    "MessageEnvelope",
    "classify_event",
    "format_size",
]
