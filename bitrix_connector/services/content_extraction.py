"""Per-category content extraction for Bitrix24 attachments.

Each extractor turns the downloaded bytes of one attachment into text the
agent can read. None of them raise: any failure becomes a bracketed
placeholder that still names the file and its size.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bitrix_connector.bitrix.types import Attachment, AttachmentCategory, format_size
from bitrix_connector.errors import ExtractionError
from bitrix_connector.services.audio_validation_service import AudioValidationService
from bitrix_connector.services.document_parser import DocumentParser
from bitrix_connector.services.speech_to_text_service import SpeechToTextService
from bitrix_connector.services.temp_files import attachment_temp_dir, build_temp_path, remove_quietly
from bitrix_connector.settings import Settings

if TYPE_CHECKING:
    from bitrix_connector.bitrix.client import BitrixClient
    from bitrix_connector.core.collaborators import ImageAnalyzer

logger = logging.getLogger(__name__)

IMAGE_PROMPT = (
    "Describe this image in detail. If it contains text, transcribe the text exactly. "
    "Mention any people, objects, charts or documents that are visible."
)

_LABELS = {
    AttachmentCategory.IMAGE: "Image",
    AttachmentCategory.VIDEO: "Video",
    AttachmentCategory.VOICE: "Voice message",
    AttachmentCategory.DOCUMENT: "Document",
    AttachmentCategory.FILE: "File",
}


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    return f"{total // 60}:{total % 60:02d}"


def placeholder(attachment: Attachment, note: str | None = None, *, label: str | None = None) -> str:
    label = label or _LABELS[attachment.category]
    text = f"{label}: {attachment.name} ({format_size(attachment.size_bytes)})"
    if note:
        text = f"{text} - {note}"
    return f"[{text}]"


def _analyzer_text(result: str | dict[str, Any] | None) -> str | None:
    if isinstance(result, dict):
        result = result.get("text")
    if isinstance(result, str) and result.strip():
        return result.strip()
    return None


class ContentExtractionService:
    def __init__(
        self,
        settings: Settings,
        *,
        image_analyzer: ImageAnalyzer | None = None,
        speech_to_text: SpeechToTextService | None = None,
        audio_validator: AudioValidationService | None = None,
        document_parser: DocumentParser | None = None,
        temp_dir: Path | None = None,
    ) -> None:
        self._settings = settings
        self._image_analyzer = image_analyzer
        self._stt = speech_to_text or SpeechToTextService(settings, temp_dir=temp_dir)
        self._audio_validator = audio_validator or AudioValidationService(
            settings.max_audio_duration_seconds
        )
        self._documents = document_parser or DocumentParser(
            settings.document_preview_chars, settings.pdf_min_text_chars
        )
        self._temp_dir = temp_dir

    def _directory(self) -> Path:
        return self._temp_dir or attachment_temp_dir(self._settings.attachment_temp_dir)

    async def enrich(
        self,
        attachment: Attachment,
        client: BitrixClient,
        *,
        asr_provider: str | None = None,
        channel_asr_provider: str | None = None,
    ) -> str:
        """Download and describe one attachment, updating it in place."""
        if not attachment.download_url:
            description = placeholder(attachment, "no download link")
        else:
            try:
                data = await client.download_file(attachment.download_url)
            except Exception as e:
                logger.warning("Failed to download attachment %s: %s", attachment.id, e)
                description = placeholder(attachment, "download failed")
            else:
                description = await self.extract(
                    attachment,
                    data,
                    asr_provider=asr_provider,
                    channel_asr_provider=channel_asr_provider,
                )
        if attachment.category is not AttachmentCategory.VOICE or not attachment.transcription:
            attachment.content_description = description
        return description

    async def extract(
        self,
        attachment: Attachment,
        data: bytes,
        *,
        asr_provider: str | None = None,
        channel_asr_provider: str | None = None,
    ) -> str:
        try:
            if attachment.category is AttachmentCategory.IMAGE:
                return await self.describe_image(attachment, data)
            if attachment.category is AttachmentCategory.DOCUMENT:
                return await self.extract_document(attachment, data)
            if attachment.category is AttachmentCategory.VOICE:
                return await self.transcribe_voice(
                    attachment,
                    data,
                    asr_provider=asr_provider,
                    channel_asr_provider=channel_asr_provider,
                )
            if attachment.category is AttachmentCategory.VIDEO:
                return self.describe_video(attachment, data)
            return placeholder(attachment)
        except Exception as e:
            logger.error(
                "Content extraction failed for %s (%s): %s",
                attachment.name,
                attachment.category.value,
                e,
                exc_info=True,
            )
            return placeholder(attachment, "could not be processed")

    async def describe_image(
        self, attachment: Attachment, data: bytes, *, label: str = "Image"
    ) -> str:
        path = build_temp_path(self._directory(), attachment.id, attachment.name)
        try:
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            logger.warning("Could not save image %s: %s", attachment.name, e)
            return placeholder(attachment, label=label)

        if self._image_analyzer is None:
            logger.info("No image analyzer configured, keeping %s for the agent", path)
            return placeholder(attachment, f"saved at {path}", label=label)

        try:
            result = await self._image_analyzer.analyze(str(path), IMAGE_PROMPT)
            text = _analyzer_text(result)
            if not text:
                raise ExtractionError("image analyzer returned no description")
        except Exception as e:
            logger.warning("Image analysis failed for %s: %s", attachment.name, e)
            return placeholder(attachment, f"saved at {path}", label=label)

        remove_quietly(path)
        logger.info("Image %s described (%d chars)", attachment.name, len(text))
        return f"{label} description: {text}"

    async def extract_document(self, attachment: Attachment, data: bytes) -> str:
        parsed = await asyncio.to_thread(
            self._documents.parse, attachment.name, data, attachment.mime_type
        )
        if parsed.text and (parsed.kind != "pdf" or parsed.scanned_image is None):
            suffix = "\n[...truncated]" if parsed.truncated else ""
            return f"Content of {attachment.name}:\n{parsed.text}{suffix}"
        if parsed.scanned_image:
            image = Attachment(
                id=attachment.id,
                name=f"{Path(attachment.name).stem}_page.jpg",
                mime_type="image/jpeg",
                size_bytes=len(parsed.scanned_image),
                category=AttachmentCategory.IMAGE,
            )
            return await self.describe_image(image, parsed.scanned_image, label="Scanned PDF")
        if parsed.kind == "pdf":
            return placeholder(attachment, "PDF without extractable text", label="Document")
        if parsed.kind == "unknown":
            return placeholder(attachment, "unsupported format")
        return placeholder(attachment, "content extraction not supported", label=parsed.kind)

    async def transcribe_voice(
        self,
        attachment: Attachment,
        data: bytes,
        *,
        asr_provider: str | None = None,
        channel_asr_provider: str | None = None,
    ) -> str:
        is_valid, duration, error = await asyncio.to_thread(
            self._audio_validator.validate_audio_duration, data
        )
        if duration is not None:
            attachment.duration_seconds = duration
        if not is_valid:
            return placeholder(attachment, error or "too long to transcribe")

        result = await self._stt.transcribe(
            data,
            attachment.name,
            attachment_id=attachment.id,
            account_provider=asr_provider,
            channel_provider=channel_asr_provider,
        )
        if not result.succeeded:
            logger.warning("Voice transcription failed for %s: %s", attachment.name, result.trail())
            return placeholder(attachment, "transcription unavailable")

        attachment.transcription = result.text
        return f"Transcription: {result.text}"

    def describe_video(self, attachment: Attachment, data: bytes) -> str:
        duration = attachment.duration_seconds
        if duration is None:
            duration = self._audio_validator.get_duration(data)
            attachment.duration_seconds = duration
        if duration:
            return placeholder(attachment, f"duration {format_duration(duration)}")
        return placeholder(attachment)
