"""Stand-in collaborators used when the connector runs without a host.

They keep the service bootable and are what the host replaces in
production: routing by peer, a plain text envelope, and a dispatcher that
echoes the message body back to the sender.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from bitrix_connector.core.collaborators import DeliverCallback, EnvelopeInput, Peer, Route

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "main"


class SessionKeyRouter:
    def __init__(self, agent_id: str = DEFAULT_AGENT_ID) -> None:
        self._agent_id = agent_id

    def resolve_route(self, channel: str, account_id: str, peer: Peer) -> Route:
        return Route(
            session_key=f"{channel}:{account_id}:{peer.kind}:{peer.id}",
            agent_id=self._agent_id,
            account_id=account_id,
        )


class PlainEnvelopeFormatter:
    def format_envelope(self, envelope: EnvelopeInput) -> str:
        stamp = datetime.fromtimestamp(envelope.timestamp_ms / 1000, tz=UTC).strftime(
            "%Y-%m-%d %H:%M UTC"
        )
        return f"[{envelope.channel} {envelope.sender_label} {stamp}] {envelope.body}"

    def finalize_context(self, fields: dict[str, Any]) -> dict[str, Any]:
        return dict(fields)


class EchoDispatcher:
    """Replies with the raw body it was given."""

    async def dispatch(self, context: Any, deliver: DeliverCallback) -> None:
        fields = context if isinstance(context, dict) else {}
        body = fields.get("RawBody")
        logger.info("Echo dispatcher handling %s", fields.get("SessionKey", "-"))
        if body:
            await deliver({"text": body})
