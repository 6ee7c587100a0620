from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from bitrix_connector.bitrix.message_processor import BitrixMessageProcessor
from bitrix_connector.config.provider import ChannelConfigProvider
from bitrix_connector.core.app_context import AppContext
from bitrix_connector.core.defaults import PlainEnvelopeFormatter, SessionKeyRouter
from bitrix_connector.services.content_extraction import ContentExtractionService
from bitrix_connector.settings import Settings
from tests.fakes import FakeBitrixClient, RecordingDispatcher, account_section


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: Fast unit tests with mocks only")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        bitrix24_domain="",
        bitrix24_webhook_secret="",
        attachment_temp_dir=str(tmp_path / "attachments"),
        message_dispatch_timeout_seconds=5.0,
        command_dispatch_timeout_seconds=5.0,
        min_request_interval_ms=0,
    )


@pytest.fixture
def fake_client() -> FakeBitrixClient:
    return FakeBitrixClient()


@pytest.fixture
def make_context(settings: Settings, fake_client: FakeBitrixClient):
    """Build an ``AppContext`` wired to fakes; every account shares ``fake_client``."""

    def _make(
        dispatcher: Any = None,
        *,
        section: dict[str, Any] | None = None,
        **setting_overrides: Any,
    ) -> AppContext:
        ctx_settings = settings.model_copy(update=setting_overrides) if setting_overrides else settings
        ctx = AppContext(
            settings=ctx_settings,
            accounts=ChannelConfigProvider(section if section is not None else account_section()),
            router=SessionKeyRouter(),
            formatter=PlainEnvelopeFormatter(),
            dispatcher=dispatcher or RecordingDispatcher(),
            extraction=ContentExtractionService(ctx_settings),
            client_factory=lambda _account: fake_client,
        )
        ctx.processor = BitrixMessageProcessor(ctx)
        return ctx

    return _make
