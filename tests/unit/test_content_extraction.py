from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from bitrix_connector.bitrix.types import Attachment, AttachmentCategory
from bitrix_connector.services.audio_validation_service import AudioValidationService
from bitrix_connector.services.content_extraction import ContentExtractionService, format_duration
from bitrix_connector.services.document_parser import ParsedDocument
from bitrix_connector.services.speech_to_text_service import TranscriptionResult
from tests.fakes import FakeBitrixClient


class FakeAnalyzer:
    def __init__(self, result: Any) -> None:
        self.result = result
        self.paths: list[str] = []

    async def analyze(self, path: str, prompt: str) -> Any:
        self.paths.append(path)
        assert Path(path).exists()
        return self.result


class FakeSpeechToText:
    def __init__(self, text: str | None) -> None:
        self.text = text
        self.providers: list[tuple[str | None, str | None]] = []

    async def transcribe(self, data: bytes, filename: str, **kwargs: Any) -> TranscriptionResult:
        self.providers.append((kwargs.get("account_provider"), kwargs.get("channel_provider")))
        return TranscriptionResult(text=self.text, provider="local" if self.text else None)


class FixedParser:
    def __init__(self, parsed: ParsedDocument | Exception) -> None:
        self.parsed = parsed

    def parse(self, name: str, data: bytes, mime_type: str = "") -> ParsedDocument:
        if isinstance(self.parsed, Exception):
            raise self.parsed
        return self.parsed


class FixedDuration(AudioValidationService):
    def __init__(self, duration: float | None, max_duration_seconds: int = 600) -> None:
        super().__init__(max_duration_seconds)
        self.duration = duration

    def get_duration(self, audio_bytes: bytes) -> float | None:
        return self.duration


def make_attachment(category: AttachmentCategory, name: str, size: int = 2048, **kwargs: Any) -> Attachment:
    return Attachment(id=9, name=name, mime_type="", size_bytes=size, category=category, **kwargs)


def temp_files(settings) -> list[Path]:
    return list(Path(settings.attachment_temp_dir).iterdir())


@pytest.mark.unit
@pytest.mark.parametrize(("seconds", "expected"), [(0, "0:00"), (65.4, "1:05"), (600, "10:00")])
def test_format_duration(seconds: float, expected: str) -> None:
    assert format_duration(seconds) == expected


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_download_link(settings) -> None:
    service = ContentExtractionService(settings)
    attachment = make_attachment(AttachmentCategory.DOCUMENT, "a.pdf")

    description = await service.enrich(attachment, FakeBitrixClient())  # type: ignore[arg-type]

    assert description == "[Document: a.pdf (2.0 KB) - no download link]"
    assert attachment.content_description == description


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_download(settings) -> None:
    service = ContentExtractionService(settings)
    attachment = make_attachment(AttachmentCategory.IMAGE, "cat.png", download_url="https://x/404")

    description = await service.enrich(attachment, FakeBitrixClient())  # type: ignore[arg-type]

    assert description == "[Image: cat.png (2.0 KB) - download failed]"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_extractor_errors_become_placeholder(settings) -> None:
    service = ContentExtractionService(settings, document_parser=FixedParser(ValueError("corrupt")))  # type: ignore[arg-type]
    attachment = make_attachment(AttachmentCategory.DOCUMENT, "broken.docx")

    description = await service.extract(attachment, b"data")

    assert description == "[Document: broken.docx (2.0 KB) - could not be processed]"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_image_without_analyzer_is_kept_on_disk(settings) -> None:
    service = ContentExtractionService(settings)
    attachment = make_attachment(AttachmentCategory.IMAGE, "cat.png", size=10)

    description = await service.extract(attachment, b"0123456789")

    [saved] = temp_files(settings)
    assert saved.read_bytes() == b"0123456789"
    assert description == f"[Image: cat.png (10 B) - saved at {saved}]"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_image_with_analyzer(settings) -> None:
    analyzer = FakeAnalyzer({"text": "  a cat on a mat "})
    service = ContentExtractionService(settings, image_analyzer=analyzer)
    attachment = make_attachment(AttachmentCategory.IMAGE, "cat.png")

    description = await service.extract(attachment, b"png")

    assert description == "Image description: a cat on a mat"
    assert len(analyzer.paths) == 1
    assert temp_files(settings) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_analysis_falls_back_to_saved_path(settings) -> None:
    service = ContentExtractionService(settings, image_analyzer=FakeAnalyzer(""))
    attachment = make_attachment(AttachmentCategory.IMAGE, "cat.png")

    description = await service.extract(attachment, b"png")

    assert description.startswith("[Image: cat.png (2.0 KB) - saved at ")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_document_text(settings) -> None:
    parser = FixedParser(ParsedDocument(kind="text", text="line one", truncated=True))
    service = ContentExtractionService(settings, document_parser=parser)  # type: ignore[arg-type]

    description = await service.extract(make_attachment(AttachmentCategory.DOCUMENT, "n.txt"), b"")

    assert description == "Content of n.txt:\nline one\n[...truncated]"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_scanned_pdf_goes_through_image_analysis(settings) -> None:
    parser = FixedParser(ParsedDocument(kind="pdf", text="", scanned_image=b"\xff\xd8jpeg"))
    analyzer = FakeAnalyzer("Invoice #12, total 40 EUR")
    service = ContentExtractionService(settings, image_analyzer=analyzer, document_parser=parser)  # type: ignore[arg-type]

    description = await service.extract(make_attachment(AttachmentCategory.DOCUMENT, "scan.pdf"), b"")

    assert description == "Scanned PDF description: Invoice #12, total 40 EUR"
    assert analyzer.paths[0].endswith("scan_page.jpg")


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("parsed", "expected"),
    [
        (ParsedDocument(kind="pdf"), "[Document: f.pdf (2.0 KB) - PDF without extractable text]"),
        (ParsedDocument(kind="Word document"), "[Word document: f.pdf (2.0 KB) - content extraction not supported]"),
        (ParsedDocument(kind="unknown"), "[Document: f.pdf (2.0 KB) - unsupported format]"),
    ],
)
async def test_document_placeholders(settings, parsed, expected) -> None:
    service = ContentExtractionService(settings, document_parser=FixedParser(parsed))  # type: ignore[arg-type]

    description = await service.extract(make_attachment(AttachmentCategory.DOCUMENT, "f.pdf"), b"")

    assert description == expected


@pytest.mark.unit
@pytest.mark.asyncio
async def test_voice_transcription(settings) -> None:
    stt = FakeSpeechToText("call me back")
    service = ContentExtractionService(
        settings, speech_to_text=stt, audio_validator=FixedDuration(12.5)  # type: ignore[arg-type]
    )
    attachment = make_attachment(
        AttachmentCategory.VOICE, "voice.ogg", download_url="https://x/voice"
    )
    client = FakeBitrixClient()
    client.downloads["https://x/voice"] = b"OggS"

    description = await service.enrich(
        attachment, client, asr_provider="openai", channel_asr_provider="local"  # type: ignore[arg-type]
    )

    assert description == "Transcription: call me back"
    assert attachment.transcription == "call me back"
    assert attachment.duration_seconds == 12.5
    assert attachment.content_description is None
    assert stt.providers == [("openai", "local")]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_voice_too_long_is_not_transcribed(settings) -> None:
    stt = FakeSpeechToText("never")
    service = ContentExtractionService(
        settings, speech_to_text=stt, audio_validator=FixedDuration(700.0)  # type: ignore[arg-type]
    )
    attachment = make_attachment(AttachmentCategory.VOICE, "long.ogg", size=1024)

    description = await service.extract(attachment, b"OggS")

    assert description == (
        "[Voice message: long.ogg (1.0 KB) - "
        "Audio duration (700.0s) exceeds maximum allowed (600s)]"
    )
    assert stt.providers == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_voice_transcription_unavailable(settings) -> None:
    service = ContentExtractionService(
        settings, speech_to_text=FakeSpeechToText(None), audio_validator=FixedDuration(None)  # type: ignore[arg-type]
    )
    attachment = make_attachment(AttachmentCategory.VOICE, "v.ogg", size=1024)

    description = await service.extract(attachment, b"OggS")

    assert description == "[Voice message: v.ogg (1.0 KB) - transcription unavailable]"
    assert attachment.transcription is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_video_reports_duration(settings) -> None:
    service = ContentExtractionService(settings, audio_validator=FixedDuration(125.0))
    attachment = make_attachment(AttachmentCategory.VIDEO, "clip.mp4", size=5 * 1024 * 1024)

    description = await service.extract(attachment, b"\x00\x00\x00\x18ftyp")

    assert description == "[Video: clip.mp4 (5.0 MB) - duration 2:05]"
    assert attachment.duration_seconds == 125.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generic_file_placeholder(settings) -> None:
    service = ContentExtractionService(settings)
    attachment = make_attachment(AttachmentCategory.FILE, "archive.zip")

    assert await service.extract(attachment, b"PK") == "[File: archive.zip (2.0 KB)]"
