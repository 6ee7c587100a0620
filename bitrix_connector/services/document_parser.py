"""Lightweight document parsing for chat attachments.

PDF support is a byte-level scan, not a PDF parser: text comes from the
``Tj``/``TJ`` show operators found in the raw file and in every
Flate-compressed stream, and a scanned page is recognised only when it is
stored as a JPEG (``/DCTDecode`` or bare ``FF D8 .. FF D9`` markers).
Everything else degrades to "no text".
"""

from __future__ import annotations

import logging
import re
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import PurePosixPath

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = frozenset(
    {".txt", ".md", ".csv", ".json", ".xml", ".html", ".log", ".yaml", ".yml", ".ini", ".rtf"}
)
OFFICE_FORMATS = {
    ".docx": "Word document",
    ".xlsx": "Excel spreadsheet",
    ".pptx": "PowerPoint presentation",
    ".doc": "Word 97-2003 document",
    ".xls": "Excel 97-2003 spreadsheet",
    ".ppt": "PowerPoint 97-2003 presentation",
    ".odt": "OpenDocument text",
    ".ods": "OpenDocument spreadsheet",
    ".odp": "OpenDocument presentation",
}
MIN_EMBEDDED_IMAGE_BYTES = 1024

_STREAM_RE = re.compile(rb"stream\r?\n(.*?)\r?\n?endstream", re.DOTALL)
_LITERAL = rb"\(((?:\\.|[^\\()])*)\)"
_TJ_RE = re.compile(_LITERAL + rb"\s*Tj", re.DOTALL)
_TJ_ARRAY_RE = re.compile(rb"\[((?:\\.|[^\\\]])*)\]\s*TJ", re.DOTALL)
_TJ_ARRAY_ITEM_RE = re.compile(_LITERAL + rb"|(-?\d+(?:\.\d+)?)", re.DOTALL)
_ESCAPES = {
    ord("n"): "\n",
    ord("r"): "\r",
    ord("t"): "\t",
    ord("b"): "\b",
    ord("f"): "\f",
    ord("("): "(",
    ord(")"): ")",
    ord("\\"): "\\",
}
# TJ kerning offsets beyond this (thousandths of an em) read as a word gap
_WORD_GAP = -200


@dataclass(slots=True)
class ParsedDocument:
    kind: str
    text: str = ""
    scanned_image: bytes | None = None
    truncated: bool = False


def unescape_pdf_string(raw: bytes) -> str:
    out: list[str] = []
    i = 0
    length = len(raw)
    while i < length:
        byte = raw[i]
        if byte != 0x5C or i + 1 >= length:  # backslash
            out.append(chr(byte))
            i += 1
            continue
        nxt = raw[i + 1]
        if nxt in _ESCAPES:
            out.append(_ESCAPES[nxt])
            i += 2
        elif 0x30 <= nxt <= 0x37:
            j = i + 1
            while j < length and j < i + 4 and 0x30 <= raw[j] <= 0x37:
                j += 1
            out.append(chr(int(raw[i + 1 : j], 8) & 0xFF))
            i = j
        elif nxt in (0x0A, 0x0D):
            # line continuation
            i += 2
            if nxt == 0x0D and i < length and raw[i] == 0x0A:
                i += 1
        else:
            out.append(chr(nxt))
            i += 2
    return "".join(out)


def _iter_streams(data: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Yield ``(dictionary, raw stream content)`` pairs."""
    for match in _STREAM_RE.finditer(data):
        dict_start = data.rfind(b"<<", max(0, match.start() - 512), match.start())
        dictionary = data[dict_start : match.start()] if dict_start != -1 else b""
        yield dictionary, match.group(1)


def _inflate(content: bytes) -> bytes | None:
    try:
        return zlib.decompress(content)
    except zlib.error:
        pass
    try:
        return zlib.decompressobj().decompress(content)
    except zlib.error:
        return None


def decoded_streams(data: bytes) -> list[bytes]:
    streams: list[bytes] = []
    for dictionary, content in _iter_streams(data):
        if b"/FlateDecode" in dictionary or content[:1] == b"\x78":
            inflated = _inflate(content)
            if inflated:
                streams.append(inflated)
    return streams


def _text_segments(chunk: bytes) -> Iterator[tuple[int, str]]:
    for match in _TJ_RE.finditer(chunk):
        yield match.start(), unescape_pdf_string(match.group(1))
    for match in _TJ_ARRAY_RE.finditer(chunk):
        parts: list[str] = []
        for item in _TJ_ARRAY_ITEM_RE.finditer(match.group(1)):
            literal, offset = item.group(1), item.group(2)
            if literal is not None:
                parts.append(unescape_pdf_string(literal))
            elif offset is not None and float(offset) <= _WORD_GAP:
                parts.append(" ")
        yield match.start(), "".join(parts)


def extract_pdf_text(data: bytes) -> str:
    chunks = [data, *decoded_streams(data)]
    pieces: list[str] = []
    for chunk in chunks:
        segments = sorted(_text_segments(chunk), key=lambda s: s[0])
        pieces.extend(text for _, text in segments if text.strip())
    text = " ".join(pieces)
    return re.sub(r"[ \t]+", " ", text).strip()


def _jpeg_in(chunk: bytes, min_size: int) -> bytes | None:
    start = chunk.find(b"\xff\xd8\xff")
    while start != -1:
        end = chunk.find(b"\xff\xd9", start + 3)
        if end == -1:
            return None
        candidate = chunk[start : end + 2]
        if len(candidate) >= min_size:
            return candidate
        start = chunk.find(b"\xff\xd8\xff", end + 2)
    return None


def find_embedded_jpeg(data: bytes, min_size: int = MIN_EMBEDDED_IMAGE_BYTES) -> bytes | None:
    """Return the first plausible JPEG image stored in a PDF, if any."""
    for dictionary, content in _iter_streams(data):
        if b"/DCTDecode" not in dictionary:
            continue
        if b"/FlateDecode" in dictionary:
            content = _inflate(content) or b""
        if content.startswith(b"\xff\xd8") and len(content) >= min_size:
            return content
    for chunk in (data, *decoded_streams(data)):
        found = _jpeg_in(chunk, min_size)
        if found:
            return found
    return None


class DocumentParser:
    def __init__(self, preview_chars: int = 3000, pdf_min_text_chars: int = 50) -> None:
        self.preview_chars = preview_chars
        self.pdf_min_text_chars = pdf_min_text_chars

    def _preview(self, kind: str, text: str) -> ParsedDocument:
        text = text.strip()
        if len(text) > self.preview_chars:
            return ParsedDocument(kind=kind, text=text[: self.preview_chars], truncated=True)
        return ParsedDocument(kind=kind, text=text)

    def parse(self, name: str, data: bytes, mime_type: str = "") -> ParsedDocument:
        ext = PurePosixPath(name or "").suffix.lower()

        if ext == ".pdf" or "pdf" in (mime_type or "") or data[:5] == b"%PDF-":
            text = extract_pdf_text(data)
            logger.debug("PDF %s: extracted %d chars of text", name, len(text))
            if len(text) >= self.pdf_min_text_chars:
                return self._preview("pdf", text)
            image = find_embedded_jpeg(data)
            if image:
                logger.info("PDF %s has little text, using embedded image (%d bytes)", name, len(image))
            return ParsedDocument(kind="pdf", text=text, scanned_image=image)

        if ext in OFFICE_FORMATS:
            return ParsedDocument(kind=OFFICE_FORMATS[ext])

        if ext in TEXT_EXTENSIONS or (mime_type or "").startswith("text/"):
            return self._preview("text", data.decode("utf-8", errors="replace"))

        return ParsedDocument(kind="unknown")
