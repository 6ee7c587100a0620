from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from bitrix_connector import __version__
from bitrix_connector.bitrix.client import BitrixClient
from bitrix_connector.bitrix.commands import sync_custom_commands
from bitrix_connector.bitrix.message_processor import BitrixMessageProcessor
from bitrix_connector.bitrix.router import router as bitrix_router
from bitrix_connector.bitrix.webhook import WEBHOOK_PATH
from bitrix_connector.config.loader import load_channel_config
from bitrix_connector.core.app_context import AppContext, get_app_context, set_app_context
from bitrix_connector.core.defaults import EchoDispatcher, PlainEnvelopeFormatter, SessionKeyRouter
from bitrix_connector.core.logging import RequestIdMiddleware, setup_logging
from bitrix_connector.services.content_extraction import ContentExtractionService
from bitrix_connector.settings import Settings, get_settings

setup_logging()
logger = logging.getLogger(__name__)


def build_app_context(settings: Settings) -> AppContext:
    """Assemble the standalone context: file/env accounts and default collaborators."""
    provider = load_channel_config(settings.channel_config_path, settings)
    logger.info(
        "Channel config loaded: accounts=%s", ",".join(provider.list_account_ids()) or "-"
    )
    ctx = AppContext(
        settings=settings,
        accounts=provider,
        router=SessionKeyRouter(),
        formatter=PlainEnvelopeFormatter(),
        dispatcher=EchoDispatcher(),
        extraction=ContentExtractionService(settings),
        client_factory=lambda account: BitrixClient.from_account(account, settings),
        channel_asr_provider=provider.asr_provider,
    )
    ctx.processor = BitrixMessageProcessor(ctx)
    return ctx


async def _sync_commands(ctx: AppContext) -> None:
    base_url = ctx.settings.public_base_url
    account = ctx.accounts.resolve_account(None)
    if not base_url or not account.custom_commands or not account.is_configured:
        return
    if not account.bot_id:
        logger.warning("Skipping command sync: BOT_ID is not configured")
        return
    handler_url = f"{base_url.rstrip('/')}{WEBHOOK_PATH}?secret={account.webhook_secret}"
    try:
        report = await sync_custom_commands(ctx.client_for(account), account, handler_url)
    except Exception as e:
        logger.warning("Command sync failed: %s", e)
        return
    logger.info(
        "Command sync: registered=%s skipped=%s failed=%s",
        report.updated,
        report.skipped,
        report.failed,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup/shutdown: register slash commands, then drop detached work on exit."""
    ctx = get_app_context(app)
    await _sync_commands(ctx)

    yield

    logger.info("Application shutting down")
    if ctx.processor is not None:
        await ctx.processor.aclose()


def create_app(context: AppContext | None = None) -> FastAPI:
    app = FastAPI(
        title="Bitrix24 Connector",
        version=__version__,
        description="Bitrix24 chat channel for the agent host",
        lifespan=lifespan,
    )
    app.add_middleware(RequestIdMiddleware)

    ctx = context or build_app_context(get_settings())
    if ctx.processor is None:
        ctx.processor = BitrixMessageProcessor(ctx)
    set_app_context(app, ctx)

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "ok"

    app.include_router(bitrix_router)
    return app


app = create_app()
