"""Voice transcription with a local Whisper service and OpenAI Whisper.

Providers are tried in order until one succeeds. The order comes from the
first explicit choice among the account, the channel config and the
``ASR_PROVIDER`` setting; ``auto`` probes the local service and prefers it
when it answers. Every temp file written for a run is removed before
``transcribe`` returns.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

import requests

from bitrix_connector.services.temp_files import attachment_temp_dir, build_temp_path, remove_quietly
from bitrix_connector.settings import Settings

logger = logging.getLogger(__name__)

LOCAL = "local"
OPENAI = "openai"
AUTO = "auto"
PROVIDER_CHOICES = (LOCAL, OPENAI, AUTO)

# Compressed containers that transcribe better as 16 kHz mono WAV
CONVERTIBLE_EXTENSIONS = frozenset({".ogg", ".oga", ".opus", ".webm", ".amr", ".m4a", ".mp3"})


class ProviderState(str, Enum):
    NOT_TRIED = "not_tried"
    TRYING = "trying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class ProviderAttempt:
    provider: str
    state: ProviderState = ProviderState.NOT_TRIED
    error: str | None = None


@dataclass(slots=True)
class TranscriptionResult:
    text: str | None
    provider: str | None
    attempts: list[ProviderAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.text)

    def trail(self) -> str:
        return ", ".join(f"{a.provider}={a.state.value}" for a in self.attempts)


class AsrProvider(Protocol):
    name: str

    def is_available(self) -> bool: ...

    def transcribe(self, path: Path) -> str: ...


class LocalWhisperProvider:
    """whisper-asr-webservice compatible endpoint (``POST /asr``)."""

    name = LOCAL

    def __init__(
        self,
        base_url: str,
        *,
        language: str | None = None,
        probe_timeout: float = 2.0,
        timeout: float = 300.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._language = language
        self._probe_timeout = probe_timeout
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._base_url)

    def is_reachable(self) -> bool:
        try:
            response = requests.get(self._base_url, timeout=self._probe_timeout)
        except requests.RequestException as e:
            logger.debug("Local ASR not reachable at %s: %s", self._base_url, e)
            return False
        return response.status_code < 500

    def transcribe(self, path: Path) -> str:
        params = {"task": "transcribe", "output": "json", "encode": "true"}
        if self._language:
            params["language"] = self._language
        with path.open("rb") as f:
            resp = requests.post(
                f"{self._base_url}/asr",
                params=params,
                files={"audio_file": (path.name, f)},
                timeout=self._timeout,
            )
        resp.raise_for_status()
        try:
            return str(resp.json().get("text", "")).strip()
        except ValueError:
            return resp.text.strip()


class OpenAIWhisperProvider:
    name = OPENAI

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "whisper-1",
        language: str | None = None,
        timeout: float = 300.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._language = language
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._api_key)

    def transcribe(self, path: Path) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        data = {"model": self._model}
        if self._language:
            data["language"] = self._language
        with path.open("rb") as f:
            resp = requests.post(
                "https://api.openai.com/v1/audio/transcriptions",
                headers=headers,
                files={"file": (path.name, f)},
                data=data,
                timeout=self._timeout,
            )
        resp.raise_for_status()
        return str(resp.json().get("text", "")).strip()


def normalize_provider(value: str | None) -> str | None:
    text = (value or "").strip().lower()
    return text if text in PROVIDER_CHOICES else None


class SpeechToTextService:
    """Service for transcribing Bitrix24 voice attachments."""

    def __init__(
        self,
        settings: Settings,
        *,
        local: LocalWhisperProvider | None = None,
        openai: AsrProvider | None = None,
        temp_dir: Path | None = None,
        convert_audio: bool = True,
    ) -> None:
        self._settings = settings
        self._local = local or LocalWhisperProvider(
            settings.local_asr_url,
            language=settings.asr_language,
            probe_timeout=settings.local_asr_probe_timeout_seconds,
        )
        self._openai = openai or OpenAIWhisperProvider(
            settings.openai_api_key, model=settings.whisper_model, language=settings.asr_language
        )
        self._temp_dir = temp_dir
        self._ffmpeg_path = shutil.which("ffmpeg") if convert_audio else None

    def _providers(self) -> dict[str, AsrProvider]:
        return {LOCAL: self._local, OPENAI: self._openai}

    def preferred_provider(
        self, account_provider: str | None = None, channel_provider: str | None = None
    ) -> str:
        for candidate in (account_provider, channel_provider, self._settings.normalized_asr_provider):
            choice = normalize_provider(candidate)
            if choice:
                return choice
        return AUTO

    async def provider_order(
        self, account_provider: str | None = None, channel_provider: str | None = None
    ) -> list[str]:
        preferred = self.preferred_provider(account_provider, channel_provider)
        if preferred == AUTO:
            reachable = await asyncio.to_thread(self._local.is_reachable)
            logger.info("ASR auto mode: local service %s", "reachable" if reachable else "unreachable")
            preferred = LOCAL if reachable else OPENAI
        secondary = OPENAI if preferred == LOCAL else LOCAL
        return [preferred, secondary]

    async def _convert_to_wav(self, source: Path) -> Path | None:
        if not self._ffmpeg_path or source.suffix.lower() not in CONVERTIBLE_EXTENSIONS:
            return None
        target = source.with_name(f"{source.stem}.wav")
        process = await asyncio.create_subprocess_exec(
            self._ffmpeg_path,
            "-y",
            "-loglevel",
            "error",
            "-i",
            str(source),
            "-ar",
            "16000",
            "-ac",
            "1",
            str(target),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            logger.warning(
                "ffmpeg conversion failed (%s), using original audio: %s",
                process.returncode,
                stderr.decode("utf-8", "replace").strip()[:200],
            )
            remove_quietly(target)
            return None
        return target

    async def transcribe(
        self,
        audio_bytes: bytes,
        filename: str,
        *,
        attachment_id: int | str = "audio",
        account_provider: str | None = None,
        channel_provider: str | None = None,
    ) -> TranscriptionResult:
        order = await self.provider_order(account_provider, channel_provider)
        result = TranscriptionResult(
            text=None, provider=None, attempts=[ProviderAttempt(p) for p in order]
        )
        directory = self._temp_dir or attachment_temp_dir(self._settings.attachment_temp_dir)
        source = build_temp_path(directory, attachment_id, filename)
        converted: Path | None = None
        try:
            await asyncio.to_thread(source.write_bytes, audio_bytes)
            try:
                converted = await self._convert_to_wav(source)
            except OSError as e:
                logger.warning("ffmpeg unavailable, using original audio: %s", e)
            audio_path = converted or source

            providers = self._providers()
            for attempt in result.attempts:
                provider = providers[attempt.provider]
                if not provider.is_available():
                    attempt.state = ProviderState.FAILED
                    attempt.error = "not configured"
                    continue
                attempt.state = ProviderState.TRYING
                logger.info(
                    "Transcribing %s with %s provider (%d bytes)",
                    filename,
                    attempt.provider,
                    len(audio_bytes),
                )
                try:
                    text = await asyncio.to_thread(provider.transcribe, audio_path)
                except Exception as e:
                    attempt.state = ProviderState.FAILED
                    attempt.error = str(e)
                    logger.warning("ASR provider %s failed: %s", attempt.provider, e)
                    continue
                if not text:
                    attempt.state = ProviderState.FAILED
                    attempt.error = "empty transcription"
                    continue
                attempt.state = ProviderState.SUCCEEDED
                result.text = text
                result.provider = attempt.provider
                break
        finally:
            remove_quietly(source, converted, source.with_name(f"{source.stem}.wav"))

        logger.info("Transcription finished for %s: %s", filename, result.trail())
        return result
