from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AttachmentCategory(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    VOICE = "voice"
    DOCUMENT = "document"
    FILE = "file"


@dataclass(slots=True)
class Attachment:
    """A file attached to one inbound message.

    Extractors fill ``duration_seconds``, ``transcription`` and
    ``content_description`` in place while the request is processed.
    """

    id: int
    name: str
    mime_type: str
    size_bytes: int
    category: AttachmentCategory
    file_id: int | None = None
    download_url: str | None = None
    preview_url: str | None = None
    duration_seconds: float | None = None
    transcription: str | None = None
    content_description: str | None = None


def format_size(size_bytes: int) -> str:
    size = max(0, size_bytes)
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"
