"""Audio validation for Bitrix24 voice attachments."""

from __future__ import annotations

import io
import logging

import mutagen
from mutagen.oggopus import OggOpus
from mutagen.oggvorbis import OggVorbis

logger = logging.getLogger(__name__)


class AudioValidationService:
    """Service for validating voice attachments before transcription."""

    def __init__(self, max_duration_seconds: int = 600) -> None:  # 10 minutes default
        self.max_duration_seconds = max_duration_seconds

    def get_duration(self, audio_bytes: bytes) -> float | None:
        """Read the audio duration with mutagen; None when it cannot be determined."""
        if not audio_bytes:
            logger.warning("Audio validation failed: empty audio data received")
            return None

        logger.debug(
            "Audio validation: %d bytes, signature %s", len(audio_bytes), audio_bytes[:4].hex()
        )

        # Ogg containers first (Bitrix24 voice notes are Opus in Ogg)
        if audio_bytes[:4] == b"OggS":
            for parser in (OggOpus, OggVorbis):
                try:
                    audio = parser(io.BytesIO(audio_bytes))
                except mutagen.MutagenError as e:
                    logger.debug("Not a %s file: %s", parser.__name__, e)
                    continue
                length = getattr(audio.info, "length", None)
                if length:
                    return float(length)

        try:
            audio = mutagen.File(io.BytesIO(audio_bytes))
        except mutagen.MutagenError as e:
            logger.debug("mutagen could not parse audio: %s", e)
            return None
        if audio is None or audio.info is None:
            return None
        length = getattr(audio.info, "length", None)
        return float(length) if length else None

    def validate_audio_duration(self, audio_bytes: bytes) -> tuple[bool, float | None, str | None]:
        """
        Check the audio against the maximum allowed duration.

        Unknown durations are accepted: the ASR providers enforce their own
        upload limits, and a voice note without readable headers is still
        worth trying.

        Returns:
            tuple: (is_valid, duration_seconds, error_message)
        """
        duration = self.get_duration(audio_bytes)
        if duration is None:
            logger.info("Could not determine audio duration (%d bytes)", len(audio_bytes or b""))
            return True, None, None

        if duration > self.max_duration_seconds:
            error_msg = (
                f"Audio duration ({duration:.1f}s) exceeds maximum allowed "
                f"({self.max_duration_seconds}s)"
            )
            logger.warning("Audio rejected - too long: %s", error_msg)
            return False, duration, error_msg

        logger.debug("Audio duration OK: %.2fs <= %ds", duration, self.max_duration_seconds)
        return True, duration, None
