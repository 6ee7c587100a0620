from __future__ import annotations

import pytest

from bitrix_connector.bitrix.commands import set_commands_visibility, sync_custom_commands
from bitrix_connector.config.provider import Account, CustomCommand
from tests.fakes import FakeBitrixClient

HANDLER_URL = "https://bot.example.com/chan/bitrix24/webhook?secret=x"


@pytest.fixture
def client() -> FakeBitrixClient:
    fake = FakeBitrixClient()
    fake.commands = [
        {"ID": "1", "COMMAND": "help", "HIDDEN": "Y"},
        {"ID": "2", "COMMAND": "status", "HIDDEN": "N"},
        {"COMMAND_ID": "3", "COMMAND": "deploy", "HIDDEN": True},
        {"COMMAND": "orphan"},
    ]
    return fake


@pytest.mark.unit
@pytest.mark.asyncio
async def test_show_commands_only_updates_hidden_ones(client: FakeBitrixClient) -> None:
    report = await set_commands_visibility(client, visible=True)  # type: ignore[arg-type]

    assert report.ok
    assert report.updated == ["1", "3"]
    assert report.skipped == ["2"]
    assert client.calls_to("update_command") == [("1", {"HIDDEN": "N"}), ("3", {"HIDDEN": "N"})]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_hide_commands(client: FakeBitrixClient) -> None:
    report = await set_commands_visibility(client, visible=False)  # type: ignore[arg-type]

    assert report.updated == ["2"]
    assert client.calls_to("update_command") == [("2", {"HIDDEN": "Y"})]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_dry_run_makes_no_updates(client: FakeBitrixClient) -> None:
    report = await set_commands_visibility(client, visible=True, dry_run=True)  # type: ignore[arg-type]

    assert report.updated == ["1", "3"]
    assert client.calls_to("update_command") == []
    assert client.calls_to("list_commands") == [()]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_failures_are_reported(client: FakeBitrixClient) -> None:
    client.fail_methods.add("update_command")

    report = await set_commands_visibility(client, visible=True)  # type: ignore[arg-type]

    assert not report.ok
    assert report.failed == ["1", "3"]
    assert report.updated == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_registers_missing_commands(client: FakeBitrixClient) -> None:
    account = Account(
        account_id="default",
        custom_commands=[
            CustomCommand(command="Help"),
            CustomCommand(command="report", title="Weekly report", params="[week]", common=True),
        ],
    )

    report = await sync_custom_commands(client, account, HANDLER_URL)  # type: ignore[arg-type]

    assert report.skipped == ["Help"]
    assert report.updated == ["report"]
    [(name, url, kwargs)] = [
        (args[0], args[1], kw) for method, args, kw in client.calls if method == "register_command"
    ]
    assert name == "report"
    assert url == HANDLER_URL
    assert kwargs == {"title": "Weekly report", "params_hint": "[week]", "common": True, "hidden": False}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_registration_failure(client: FakeBitrixClient) -> None:
    client.fail_methods.add("register_command")
    account = Account(account_id="default", custom_commands=[CustomCommand(command="report")])

    report = await sync_custom_commands(client, account, HANDLER_URL)  # type: ignore[arg-type]

    assert report.failed == ["report"]
    assert not report.ok
