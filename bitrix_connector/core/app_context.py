from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from fastapi import FastAPI

    from bitrix_connector.bitrix.client import BitrixClient
    from bitrix_connector.bitrix.message_processor import BitrixMessageProcessor
    from bitrix_connector.config.provider import Account
    from bitrix_connector.core.collaborators import (
        AccountResolver,
        AgentRouter,
        ContextFormatter,
        Dispatcher,
    )
    from bitrix_connector.services.content_extraction import ContentExtractionService
    from bitrix_connector.settings import Settings

    ClientFactory = Callable[[Account], BitrixClient]


@dataclass(slots=True)
class AppContext:
    settings: Settings
    accounts: AccountResolver
    router: AgentRouter
    formatter: ContextFormatter
    dispatcher: Dispatcher
    extraction: ContentExtractionService
    client_factory: ClientFactory
    channel_asr_provider: str | None = None
    processor: BitrixMessageProcessor | None = None
    # one REST client (and its throttle) per account id, rebuilt when credentials change
    clients: dict[str, tuple[tuple[str | None, ...], BitrixClient]] = field(default_factory=dict)

    def client_for(self, account: Account) -> BitrixClient:
        credentials = (
            account.domain,
            account.webhook_secret,
            account.user_id,
            account.client_id,
            account.bot_id,
        )
        cached = self.clients.get(account.account_id)
        if cached is not None and cached[0] == credentials:
            return cached[1]
        client = self.client_factory(account)
        self.clients[account.account_id] = (credentials, client)
        return client


def set_app_context(app: FastAPI, ctx: AppContext) -> None:
    # Store one typed context object under app.state
    app.state.ctx = ctx


def get_app_context(app: FastAPI) -> AppContext:
    # Retrieve and cast from app.state
    return cast("AppContext", app.state.ctx)
