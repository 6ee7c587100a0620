"""Bitrix24 event processing: verification, enrichment, dispatch and delivery.

Each event moves through

    Received -> Verifying -> Rejected
                          -> Enriching -> Dispatching -> Delivered
                                                      -> FallbackSent

Cheap structural checks run first, then the webhook secret is verified, and
only then does anything with side effects happen (typing indicator, file
downloads, agent dispatch). The agent dispatch is the one step with a hard
deadline; when it expires the user gets a fallback message and the dispatch
is left to finish on its own.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hmac
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from bitrix_connector.bitrix.attachments import format_attachments_block, resolve_attachment
from bitrix_connector.bitrix.markup import bb_to_markdown
from bitrix_connector.bitrix.payload_parser import extract_command, extract_message
from bitrix_connector.bitrix.types import (
    CHANNEL,
    Attachment,
    CommandEnvelope,
    DeliveryPayload,
    DispatchContext,
    EventType,
    InboundEvent,
    MessageEnvelope,
)
from bitrix_connector.core.collaborators import EnvelopeInput, Peer
from bitrix_connector.core.logging import mask_secret
from bitrix_connector.errors import DispatchTimeoutError

if TYPE_CHECKING:
    from bitrix_connector.bitrix.client import BitrixClient
    from bitrix_connector.config.provider import Account
    from bitrix_connector.core.app_context import AppContext

logger = logging.getLogger(__name__)


class ProcessingState(str, Enum):
    REJECTED = "rejected"
    DELIVERED = "delivered"
    FALLBACK_SENT = "fallback_sent"
    ACKNOWLEDGED = "acknowledged"


class BitrixMessageProcessor:
    """
    Bitrix24 event processor.

    Responsibilities:
    - structural checks, loop prevention and webhook secret verification
    - typing indicator (detached, never awaited by the pipeline)
    - attachment resolution and content extraction
    - dispatch context assembly and bounded agent dispatch
    - reply delivery and fallback messages
    """

    MAX_INPUT_CHARS = 4000
    TIMEOUT_FALLBACK_TEXT = (
        "Sorry, this is taking longer than expected. Please try again in a moment."
    )
    ERROR_FALLBACK_TEXT = "Sorry, I encountered an error processing your message."

    def __init__(self, ctx: AppContext) -> None:
        self._ctx = ctx
        self._background: set[asyncio.Task[Any]] = set()
        self._events: set[asyncio.Task[ProcessingState]] = set()

    # ----- helpers -----

    def _spawn(self, coro: Awaitable[Any], label: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("%s failed: %s", label, exc)
            else:
                logger.debug("%s finished", label)

        task.add_done_callback(_done)
        return task

    def schedule(
        self, event: InboundEvent, secret: str | None, account_id: str | None = None
    ) -> asyncio.Task[ProcessingState]:
        """Process ``event`` in the background so the webhook can answer at once."""
        task = asyncio.ensure_future(self.process_event(event, secret, account_id))
        self._events.add(task)
        task.add_done_callback(self._events.discard)
        return task

    async def drain(self) -> list[ProcessingState]:
        """Wait for every scheduled event to reach a terminal state."""
        results: list[ProcessingState] = []
        while True:
            pending = [t for t in self._events if not t.done()]
            if not pending:
                return results
            results.extend(await asyncio.gather(*pending))

    async def aclose(self) -> None:
        """Cancel detached work (typing indicators, orphaned dispatches)."""
        tasks = list(self._background) + list(self._events)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def verify_secret(self, secret: str | None, account_id: str | None = None) -> Account | None:
        """Resolve the account and check the supplied webhook secret.

        The comparison is constant-time over the full secret.
        """
        account = self._ctx.accounts.resolve_account(account_id)
        if not account.is_configured:
            logger.error("Bitrix24 account %s is not configured", account.account_id)
            return None
        if not account.enabled:
            logger.warning("Bitrix24 account %s is disabled", account.account_id)
            return None
        supplied = (secret or "").encode("utf-8")
        expected = account.webhook_secret.encode("utf-8")
        if not secret or not hmac.compare_digest(supplied, expected):
            logger.warning("Webhook secret verification failed. Received: %s", mask_secret(secret))
            return None
        return account

    def _client(self, account: Account, event_bot_id: str | None) -> BitrixClient:
        if not account.bot_id and event_bot_id:
            account = dataclasses.replace(account, bot_id=event_bot_id)
        return self._ctx.client_for(account)

    def _start_typing(self, client: BitrixClient, dialog_id: str) -> None:
        self._spawn(client.send_typing(dialog_id), f"Typing indicator for {dialog_id}")

    async def _send_fallback(self, client: BitrixClient, dialog_id: str, text: str) -> None:
        try:
            await client.send_message(dialog_id, text)
        except Exception as e:
            logger.error("Failed to send fallback message to %s: %s", dialog_id, e)

    async def _dispatch(
        self,
        context: DispatchContext,
        deliver: Callable[[Any], Awaitable[None]],
        timeout: float,
    ) -> None:
        finalized = self._ctx.formatter.finalize_context(context.as_fields())
        task = self._spawn(
            self._ctx.dispatcher.dispatch(finalized, deliver), f"Dispatch {context.message_sid}"
        )
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as e:
            raise DispatchTimeoutError(timeout) from e

    async def _run_dispatch(
        self,
        client: BitrixClient,
        context: Callable[[], Awaitable[DispatchContext]],
        deliver: Callable[[Any], Awaitable[None]],
        *,
        timeout: float,
        fallback_dialog: str,
        error_text: str,
        label: str,
    ) -> ProcessingState:
        try:
            dispatch_context = await context()
            await self._dispatch(dispatch_context, deliver, timeout)
        except DispatchTimeoutError as e:
            logger.error("%s: %s", label, e)
            await self._send_fallback(client, fallback_dialog, self.TIMEOUT_FALLBACK_TEXT)
            return ProcessingState.FALLBACK_SENT
        except Exception as e:
            logger.error("%s failed: %s", label, e, exc_info=True)
            await self._send_fallback(client, fallback_dialog, error_text)
            return ProcessingState.FALLBACK_SENT
        logger.info("%s processed", label)
        return ProcessingState.DELIVERED

    async def _collect_attachments(
        self, envelope: MessageEnvelope, client: BitrixClient, account: Account
    ) -> tuple[list[Attachment], list[str]]:
        attachments: list[Attachment] = []
        unresolved: list[str] = []
        for file_id in envelope.file_ids:
            attachment = await resolve_attachment(file_id, client)
            if attachment is None:
                unresolved.append(file_id)
                continue
            await self._ctx.extraction.enrich(
                attachment,
                client,
                asr_provider=account.asr_provider,
                channel_asr_provider=self._ctx.channel_asr_provider,
            )
            attachments.append(attachment)
        return attachments, unresolved

    # ----- entry point -----

    async def process_event(
        self, event: InboundEvent, secret: str | None, account_id: str | None = None
    ) -> ProcessingState:
        try:
            if event.event_type is EventType.MESSAGE:
                return await self.handle_message(event, secret, account_id)
            if event.event_type is EventType.COMMAND:
                return await self.handle_command(event, secret, account_id)
            if event.event_type is EventType.BOT_DELETED:
                logger.warning("Bitrix24 bot was deleted: %s", event.data.get("BOT_ID") or event.data.get("BOT"))
            else:
                logger.info("Unhandled Bitrix24 event type: %s", event.event_name)
            return ProcessingState.ACKNOWLEDGED
        except Exception as e:
            logger.error("Unexpected error processing %s: %s", event.event_name, e, exc_info=True)
            return ProcessingState.REJECTED

    # ----- messages -----

    async def handle_message(
        self, event: InboundEvent, secret: str | None, account_id: str | None = None
    ) -> ProcessingState:
        envelope = extract_message(event)

        if not envelope.sender_id:
            logger.warning("Message event missing author ID")
            return ProcessingState.REJECTED
        if envelope.is_from_bot:
            logger.debug("Skipping bot's own message")
            return ProcessingState.REJECTED
        if not envelope.text.strip() and not envelope.has_attachment_indicator:
            logger.debug("Empty message, skipping")
            return ProcessingState.REJECTED

        account = self.verify_secret(secret, account_id)
        if account is None:
            return ProcessingState.REJECTED

        sender_id = envelope.sender_id
        sender_name = envelope.sender_name or f"User{sender_id}"
        is_group = envelope.is_group and bool(envelope.chat_id or envelope.dialog_id)
        reply_dialog = self._reply_dialog(envelope)
        logger.info(
            "Message from %s (%s) in %s: %r",
            sender_name,
            sender_id,
            reply_dialog,
            envelope.text[:100],
        )

        client = self._client(account, envelope.bot_id)
        self._start_typing(client, reply_dialog)

        async def build_context() -> DispatchContext:
            attachments, unresolved = await self._collect_attachments(envelope, client, account)
            raw_text = bb_to_markdown(envelope.text)[: self.MAX_INPUT_CHARS]
            block = format_attachments_block(attachments, unresolved)
            message_body = "\n\n".join(part for part in (raw_text, block) if part)

            chat_ref = envelope.chat_id or envelope.dialog_id
            peer_id = f"chat:{chat_ref}" if is_group else sender_id
            address = f"{CHANNEL}:{peer_id}"
            label = f"chat:{chat_ref}" if is_group else sender_name
            route = self._ctx.router.resolve_route(
                CHANNEL, account.account_id, Peer(kind="group" if is_group else "dm", id=peer_id)
            )
            body = self._ctx.formatter.format_envelope(
                EnvelopeInput(
                    channel="Bitrix24",
                    sender_label=label,
                    timestamp_ms=envelope.timestamp_ms,
                    body=message_body,
                    chat_type="group" if is_group else "direct",
                    sender_id=sender_id,
                    sender_name=sender_name,
                )
            )
            return DispatchContext(
                body=body,
                raw_body=message_body,
                command_body=message_body,
                from_address=address,
                to_address=address,
                session_key=route.session_key,
                account_id=route.account_id,
                agent_id=route.agent_id,
                dm_policy=account.dm_policy or "open",
                chat_type="group" if is_group else "direct",
                conversation_label=label,
                group_subject=f"chat{chat_ref}" if is_group else None,
                sender_id=sender_id,
                sender_name=sender_name,
                message_sid=envelope.message_id or f"msg:{envelope.timestamp_ms}",
                timestamp_ms=envelope.timestamp_ms,
                originating_to=address,
                attachments=tuple(attachments),
            )

        async def deliver(payload: Any) -> None:
            delivery = DeliveryPayload.from_output(payload)
            if delivery.is_empty:
                logger.warning("Empty text in payload, skipping delivery")
                return
            logger.info("Sending response to %s: %r", reply_dialog, delivery.message_text[:100])
            await client.send_message(reply_dialog, delivery.message_text)

        return await self._run_dispatch(
            client,
            build_context,
            deliver,
            timeout=self._ctx.settings.message_dispatch_timeout_seconds,
            fallback_dialog=reply_dialog,
            error_text=self.ERROR_FALLBACK_TEXT,
            label=f"Message from {sender_name} ({sender_id})",
        )

    @staticmethod
    def _reply_dialog(envelope: MessageEnvelope) -> str:
        if envelope.is_group:
            if envelope.dialog_id:
                return envelope.dialog_id
            if envelope.chat_id:
                return f"chat{envelope.chat_id}"
        return envelope.sender_id or envelope.dialog_id or ""

    # ----- commands -----

    async def handle_command(
        self, event: InboundEvent, secret: str | None, account_id: str | None = None
    ) -> ProcessingState:
        envelope: CommandEnvelope = extract_command(event)

        if not envelope.sender_id or not envelope.command:
            logger.debug("Command event missing required details")
            return ProcessingState.REJECTED

        account = self.verify_secret(secret, account_id)
        if account is None:
            return ProcessingState.REJECTED

        sender_id = envelope.sender_id
        sender_name = envelope.sender_name or f"User{sender_id}"
        dialog_id = envelope.dialog_id or sender_id
        is_group = envelope.is_group
        command_text = envelope.command_text
        logger.info(
            "Command /%s from %s (%s), params: %r",
            envelope.command,
            sender_name,
            sender_id,
            envelope.command_params,
        )

        client = self._client(account, envelope.bot_id)
        self._start_typing(client, dialog_id)

        async def build_context() -> DispatchContext:
            peer_id = f"chat:{dialog_id}" if is_group else sender_id
            to_address = f"slash:{sender_id}"
            label = f"chat:{dialog_id}" if is_group else sender_name
            route = self._ctx.router.resolve_route(
                CHANNEL, account.account_id, Peer(kind="group" if is_group else "dm", id=peer_id)
            )
            return DispatchContext(
                body=command_text,
                raw_body=command_text,
                command_body=command_text,
                from_address=f"{CHANNEL}:{peer_id}",
                to_address=to_address,
                session_key=f"{CHANNEL}:slash:{sender_id}",
                account_id=route.account_id,
                agent_id=route.agent_id,
                dm_policy=account.dm_policy or "open",
                chat_type="group" if is_group else "direct",
                conversation_label=label,
                group_subject=dialog_id if is_group else None,
                sender_id=sender_id,
                sender_name=sender_name,
                message_sid=envelope.message_id or f"cmd:{envelope.timestamp_ms}",
                timestamp_ms=envelope.timestamp_ms,
                originating_to=to_address,
                command_args={"raw": envelope.command_params} if envelope.command_params else None,
                command_source="native",
                was_mentioned=True,
            )

        async def deliver(payload: Any) -> None:
            delivery = DeliveryPayload.from_output(payload)
            if delivery.is_empty:
                logger.warning("Empty command response, skipping")
                return
            logger.info("Sending command response to %s: %r", dialog_id, delivery.message_text[:100])
            if envelope.message_id and (envelope.command_id or envelope.command):
                await client.answer_command(
                    envelope.message_id,
                    delivery.message_text,
                    command_id=envelope.command_id,
                    command=None if envelope.command_id else envelope.command,
                )
            else:
                await client.send_message(dialog_id, delivery.message_text)

        return await self._run_dispatch(
            client,
            build_context,
            deliver,
            timeout=self._ctx.settings.command_dispatch_timeout_seconds,
            fallback_dialog=dialog_id,
            error_text=f"Sorry, I encountered an error processing the /{envelope.command} command.",
            label=f"Command /{envelope.command} from {sender_name}",
        )
