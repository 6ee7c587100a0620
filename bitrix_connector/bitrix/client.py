"""Bitrix24 REST client.

Every call goes through a per-instance min-interval throttle, then a POST with
the parameters serialized into the query string (Bitrix24 reads bracket paths
such as ``FIELDS[HIDDEN]=N`` from the URL). ``requests`` is blocking, so each
round trip runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Mapping
from typing import Any

import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bitrix_connector.bitrix.markup import TEXT_CHUNK_LIMIT, markdown_to_bb, split_text
from bitrix_connector.config.provider import Account
from bitrix_connector.errors import BitrixApiError
from bitrix_connector.services.rate_limiter import MinIntervalRateLimiter
from bitrix_connector.settings import Settings

logger = logging.getLogger(__name__)


def _scalar(value: object) -> str:
    if isinstance(value, bool):
        return "Y" if value else "N"
    return str(value)


def flatten_params(params: Mapping[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested mappings and lists into bracket-path query pairs.

    ``{"FIELDS": {"HIDDEN": "N"}}`` becomes ``[("FIELDS[HIDDEN]", "N")]`` and
    ``{"LANG": [{"TITLE": "x"}]}`` becomes ``[("LANG[0][TITLE]", "x")]``.
    ``None`` values are dropped.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        path = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(flatten_params(value, path))
        elif isinstance(value, (list, tuple)):
            pairs.extend(flatten_params({str(i): item for i, item in enumerate(value)}, path))
        else:
            pairs.append((path, _scalar(value)))
    return pairs


class BitrixClient:
    def __init__(
        self,
        domain: str,
        *,
        webhook_secret: str | None = None,
        user_id: str | None = None,
        bot_id: str | None = None,
        client_id: str | None = None,
        min_interval_ms: int = 1000,
        timeout_seconds: float = 30.0,
        rate_limiter: MinIntervalRateLimiter | None = None,
    ) -> None:
        self.domain = domain
        self.bot_id = bot_id
        self._webhook_secret = webhook_secret
        self._user_id = user_id
        self._client_id = client_id
        self._timeout = timeout_seconds
        self._rate_limiter = rate_limiter or MinIntervalRateLimiter(min_interval_ms)

    @classmethod
    def from_account(cls, account: Account, settings: Settings) -> BitrixClient:
        return cls(
            account.domain,
            webhook_secret=account.webhook_secret,
            user_id=account.user_id,
            bot_id=account.bot_id,
            client_id=account.client_id,
            min_interval_ms=settings.min_request_interval_ms,
            timeout_seconds=settings.http_timeout_seconds,
        )

    @property
    def rate_limiter(self) -> MinIntervalRateLimiter:
        return self._rate_limiter

    def build_url(self, method: str) -> str:
        if self._user_id and self._webhook_secret:
            return f"https://{self.domain}/rest/{self._user_id}/{self._webhook_secret}/{method}"
        return f"https://{self.domain}/rest/{method}"

    def _post(self, url: str, query: list[tuple[str, str]]) -> requests.Response:
        return requests.post(url, params=query, headers={"Accept": "*/*"}, timeout=self._timeout)

    async def call_api(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        """Execute a REST method and return its ``result`` field."""
        await self._rate_limiter.acquire()

        query = flatten_params(params or {})
        if self._client_id:
            query.append(("CLIENT_ID", self._client_id))
        url = self.build_url(method)
        logger.debug("Bitrix24 API call: %s on %s (%d params)", method, self.domain, len(query))

        try:
            response = await asyncio.to_thread(self._post, url, query)
        except requests.RequestException as e:
            logger.error("Bitrix24 API call failed: %s: %s", method, e)
            raise BitrixApiError(method, f"request failed: {e}") from e

        if not response.ok:
            logger.error("Bitrix24 API call failed: %s: HTTP %d", method, response.status_code)
            raise BitrixApiError(
                method,
                f"HTTP {response.status_code}: {response.reason}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BitrixApiError(method, "response is not JSON", status_code=response.status_code) from e

        if isinstance(data, dict) and data.get("error"):
            description = data.get("error_description") or data.get("error")
            logger.error("Bitrix24 API error: %s: %s", method, description)
            raise BitrixApiError(method, str(description), status_code=response.status_code)

        logger.debug("Bitrix24 API call success: %s", method)
        return data.get("result") if isinstance(data, dict) else data

    def _require_bot_id(self, method: str) -> str:
        if not self.bot_id:
            raise BitrixApiError(method, "BOT_ID is not configured for this account")
        return self.bot_id

    async def send_message(self, dialog_id: str, text: str, **options: Any) -> list[Any]:
        """Send markdown text as the bot, split into consecutive messages if long."""
        bot_id = self._require_bot_id("imbot.message.add")
        formatted = markdown_to_bb(text)
        chunks = split_text(formatted, TEXT_CHUNK_LIMIT) or [formatted]

        logger.info(
            "Sending bot message to DIALOG_ID=%s (%d chars, %d parts)",
            dialog_id,
            len(formatted),
            len(chunks),
        )
        results: list[Any] = []
        for chunk in chunks:
            params: dict[str, Any] = {
                "BOT_ID": bot_id,
                "DIALOG_ID": dialog_id,
                "MESSAGE": chunk,
                "SYSTEM": "N",
                **options,
            }
            results.append(await self.call_api("imbot.message.add", params))
        return results

    async def send_typing(self, dialog_id: str) -> Any:
        return await self.call_api(
            "imbot.chat.sendTyping",
            {"BOT_ID": self._require_bot_id("imbot.chat.sendTyping"), "DIALOG_ID": dialog_id},
        )

    async def get_user_info(self, user_id: str) -> dict[str, Any] | None:
        try:
            uid: int | str = int(user_id)
        except (TypeError, ValueError):
            uid = user_id
        result = await self.call_api("user.get", {"ID": uid})
        if isinstance(result, list) and result:
            return result[0]
        return None

    async def get_file_info(self, file_id: str | int) -> dict[str, Any] | None:
        result = await self.call_api("disk.file.get", {"id": file_id})
        return result if isinstance(result, dict) else None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _get(self, url: str) -> requests.Response:
        return requests.get(url, timeout=self._timeout)

    async def download_file(self, url: str) -> bytes:
        try:
            response = await asyncio.to_thread(self._get, url)
            response.raise_for_status()
        except requests.RequestException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise BitrixApiError("download", str(e), status_code=status_code) from e
        return response.content

    async def send_file(
        self,
        dialog_id: str,
        file_name: str,
        content: bytes,
        *,
        storage_id: str | int | None = None,
        caption: str | None = None,
    ) -> Any:
        """Upload a file to Bitrix24 Disk and post it to the dialog as the bot."""
        upload = await self.call_api(
            "disk.storage.uploadfile",
            {
                "id": storage_id,
                "data": {"NAME": file_name},
                "fileContent": [file_name, base64.b64encode(content).decode("ascii")],
            },
        )
        if not isinstance(upload, dict) or not upload.get("ID"):
            raise BitrixApiError("disk.storage.uploadfile", "file upload failed")

        link = upload.get("DETAIL_URL") or upload.get("DOWNLOAD_URL")
        params: dict[str, Any] = {
            "BOT_ID": self._require_bot_id("imbot.message.add"),
            "DIALOG_ID": dialog_id,
            "MESSAGE": markdown_to_bb(caption) if caption else file_name,
            "SYSTEM": "N",
            "ATTACH": [{"FILE": {"NAME": file_name, "LINK": link, "SIZE": len(content)}}],
        }
        result = await self.call_api("imbot.message.add", params)
        logger.info("File sent to DIALOG_ID=%s: %s", dialog_id, file_name)
        return result

    async def register_bot(self, code: str, name: str, handler_url: str) -> Any:
        result = await self.call_api(
            "imbot.register",
            {
                "CODE": code,
                "TYPE": "B",
                "EVENT_MESSAGE_ADD": handler_url,
                "EVENT_WELCOME_MESSAGE": handler_url,
                "EVENT_BOT_DELETE": handler_url,
                "OPENLINE": "N",
                "PROPERTIES": {"NAME": name},
            },
        )
        logger.info("Bot %s registered on %s", code, self.domain)
        return result

    async def register_command(
        self,
        command: str,
        handler_url: str,
        *,
        title: str = "",
        params_hint: str = "",
        common: bool = False,
        hidden: bool = False,
        language: str = "en",
    ) -> Any:
        return await self.call_api(
            "imbot.command.register",
            {
                "BOT_ID": self._require_bot_id("imbot.command.register"),
                "COMMAND": command,
                "COMMON": common,
                "HIDDEN": hidden,
                "EXTRANET_SUPPORT": False,
                "LANG": [{"LANGUAGE_ID": language, "TITLE": title or command, "PARAMS": params_hint}],
                "EVENT_COMMAND_ADD": handler_url,
            },
        )

    async def update_command(self, command_id: str | int, fields: Mapping[str, Any]) -> Any:
        return await self.call_api(
            "imbot.command.update", {"COMMAND_ID": command_id, "FIELDS": dict(fields)}
        )

    async def unregister_command(self, command_id: str | int) -> Any:
        return await self.call_api("imbot.command.unregister", {"COMMAND_ID": command_id})

    async def list_commands(self) -> list[dict[str, Any]]:
        result = await self.call_api("imbot.command.list", {"BOT_ID": self.bot_id})
        if isinstance(result, dict):
            result = list(result.values())
        if not isinstance(result, list):
            return []
        return [c for c in result if isinstance(c, dict)]

    async def answer_command(
        self,
        message_id: str,
        text: str,
        *,
        command_id: str | None = None,
        command: str | None = None,
    ) -> Any:
        """Answer a slash command in place via ``imbot.command.answer``."""
        if not command_id and not command:
            raise BitrixApiError("imbot.command.answer", "command id or name is required")
        params: dict[str, Any] = {
            "MESSAGE_ID": message_id,
            "MESSAGE": markdown_to_bb(text),
        }
        if command_id:
            params["COMMAND_ID"] = command_id
        else:
            params["COMMAND"] = command
        return await self.call_api("imbot.command.answer", params)

    async def health(self) -> bool:
        try:
            await self.call_api("profile.info", {})
            return True
        except Exception as e:
            logger.error("Bitrix24 health check failed: %s", e)
            return False
