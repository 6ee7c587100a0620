from __future__ import annotations

import logging
import mimetypes
import re
from collections.abc import Iterable
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from bitrix_connector.bitrix.types import Attachment, AttachmentCategory, format_size

if TYPE_CHECKING:
    from bitrix_connector.bitrix.client import BitrixClient

logger = logging.getLogger(__name__)

# Keywords must start a token, so "invoice" is not a voice note
VOICE_NAME_RE = re.compile(r"(?<![a-zа-яё])(voice|recording|audio_message|голосов)")
VOICE_MIME_TYPES = frozenset({"audio/ogg", "audio/opus", "audio/webm", "audio/amr"})
VOICE_EXTENSIONS = frozenset({".oga", ".ogg", ".opus", ".amr", ".m4a"})

IMAGE_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff", ".heic", ".svg"}
)
VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".avi", ".mkv", ".webm", ".wmv", ".m4v", ".3gp"})
AUDIO_EXTENSIONS = frozenset({".mp3", ".wav", ".flac", ".aac", ".wma", ".aiff"})
DOCUMENT_MIME_MARKERS = (
    "pdf",
    "word",
    "excel",
    "spreadsheet",
    "presentation",
    "text/",
    "json",
    "xml",
    "csv",
    "rtf",
    "opendocument",
)
DOCUMENT_EXTENSIONS = frozenset(
    {
        ".pdf",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
        ".odt",
        ".ods",
        ".odp",
        ".rtf",
        ".txt",
        ".md",
        ".csv",
        ".json",
        ".xml",
        ".html",
        ".log",
        ".yaml",
        ".yml",
        ".ini",
    }
)


def _extension(name: str) -> str:
    return PurePosixPath(name or "").suffix.lower()


def guess_mime_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name or "")
    return guessed or ""


def _is_ambiguous_mime(mime: str) -> bool:
    return (
        not mime
        or mime == "application/octet-stream"
        or mime.startswith(("audio/", "video/"))
    )


def classify_attachment(mime_type: str | None, name: str | None) -> AttachmentCategory:
    """Pick a category from MIME type and file name; first matching rule wins."""
    name = name or ""
    mime = (mime_type or "").split(";")[0].strip().lower() or guess_mime_type(name)
    lowered = name.lower()
    ext = _extension(name)

    if _is_ambiguous_mime(mime) and VOICE_NAME_RE.search(lowered):
        return AttachmentCategory.VOICE
    if mime in VOICE_MIME_TYPES:
        return AttachmentCategory.VOICE
    if ext in VOICE_EXTENSIONS and (not mime or mime.startswith("audio/")):
        return AttachmentCategory.VOICE

    if mime.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return AttachmentCategory.IMAGE
    if mime.startswith("video/") or ext in VIDEO_EXTENSIONS:
        return AttachmentCategory.VIDEO
    if mime.startswith("audio/") or ext in AUDIO_EXTENSIONS or ext in VOICE_EXTENSIONS:
        return AttachmentCategory.VOICE

    if any(marker in mime for marker in DOCUMENT_MIME_MARKERS) or ext in DOCUMENT_EXTENSIONS:
        return AttachmentCategory.DOCUMENT
    return AttachmentCategory.FILE


def _int_or_none(value: object) -> int | None:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


def attachment_from_file_info(file_id: str, info: dict[str, Any]) -> Attachment:
    name = str(info.get("NAME") or f"file_{file_id}")
    mime = str(info.get("MIME_TYPE") or info.get("CONTENT_TYPE") or "") or guess_mime_type(name)
    return Attachment(
        id=_int_or_none(info.get("ID")) or int(file_id),
        file_id=_int_or_none(info.get("FILE_ID")),
        name=name,
        mime_type=mime,
        size_bytes=_int_or_none(info.get("SIZE")) or 0,
        category=classify_attachment(mime, name),
        download_url=info.get("DOWNLOAD_URL") or None,
        preview_url=info.get("DETAIL_URL") or None,
    )


async def resolve_attachment(file_id: str, client: BitrixClient) -> Attachment | None:
    """Fetch disk metadata for ``file_id``; ``None`` when anything goes wrong."""
    try:
        info = await client.get_file_info(file_id)
    except Exception as e:
        logger.warning("Failed to resolve attachment %s: %s", file_id, e)
        return None
    if not info:
        logger.warning("No file info returned for attachment %s", file_id)
        return None
    attachment = attachment_from_file_info(file_id, info)
    logger.info(
        "Resolved attachment %s: %s (%s, %s)",
        file_id,
        attachment.name,
        attachment.category.value,
        format_size(attachment.size_bytes),
    )
    return attachment


def unresolved_placeholder(file_id: str) -> str:
    return f"[File: {file_id}]"


def format_attachments_block(attachments: Iterable[Attachment], unresolved: Iterable[str] = ()) -> str:
    lines = ["[Attachments]"]
    for attachment in attachments:
        lines.append(
            f"- {attachment.category.value}: {attachment.name} ({format_size(attachment.size_bytes)})"
        )
        detail = attachment.transcription or attachment.content_description
        if attachment.transcription:
            detail = f"Transcription: {attachment.transcription}"
        if detail:
            lines.extend(f"  {line}" for line in detail.splitlines() if line.strip())
    lines.extend(f"- {unresolved_placeholder(file_id)}" for file_id in unresolved)
    return "\n".join(lines) if len(lines) > 1 else ""
