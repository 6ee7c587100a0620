"""Host-side collaborators the connector depends on.

The connector never looks these up globally; the FastAPI app receives them
through ``AppContext`` and tests inject fakes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from bitrix_connector.config.provider import Account

DeliverCallback = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Peer:
    kind: str  # "dm" or "group"
    id: str


@dataclass(frozen=True, slots=True)
class Route:
    session_key: str
    agent_id: str
    account_id: str


@dataclass(frozen=True, slots=True)
class EnvelopeInput:
    channel: str
    sender_label: str
    timestamp_ms: int
    body: str
    chat_type: str
    sender_id: str
    sender_name: str


class AccountResolver(Protocol):
    def resolve_account(self, account_id: str | None = None) -> Account: ...


class AgentRouter(Protocol):
    def resolve_route(self, channel: str, account_id: str, peer: Peer) -> Route: ...


class ContextFormatter(Protocol):
    def format_envelope(self, envelope: EnvelopeInput) -> str: ...

    def finalize_context(self, fields: dict[str, Any]) -> Any: ...


class Dispatcher(Protocol):
    async def dispatch(self, context: Any, deliver: DeliverCallback) -> None: ...


class ImageAnalyzer(Protocol):
    async def analyze(self, path: str, prompt: str) -> str | dict[str, Any] | None: ...
