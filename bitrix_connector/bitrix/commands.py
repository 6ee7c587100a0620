"""Slash-command management for the Bitrix24 bot.

Both operations read the current command list first so they only touch
commands that actually need a change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from bitrix_connector.bitrix.client import BitrixClient
from bitrix_connector.config.provider import Account

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandSyncReport:
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _is_hidden(command: dict[str, Any]) -> bool:
    value = command.get("HIDDEN")
    if isinstance(value, str):
        return value.strip().upper() == "Y"
    return value is True


def _command_id(command: dict[str, Any]) -> str:
    return str(command.get("ID") or command.get("COMMAND_ID") or "")


async def sync_custom_commands(
    client: BitrixClient, account: Account, handler_url: str
) -> CommandSyncReport:
    """Register the account's configured commands that the bot does not have yet."""
    report = CommandSyncReport()
    existing = {
        str(c.get("COMMAND", "")).lower() for c in await client.list_commands()
    }

    for custom in account.custom_commands:
        if custom.command.lower() in existing:
            report.skipped.append(custom.command)
            continue
        try:
            await client.register_command(
                custom.command,
                handler_url,
                title=custom.title,
                params_hint=custom.params,
                common=custom.common,
                hidden=custom.hidden,
            )
        except Exception as e:
            logger.error("Failed to register command /%s: %s", custom.command, e)
            report.failed.append(custom.command)
            continue
        logger.info("Registered command /%s for account %s", custom.command, account.account_id)
        report.updated.append(custom.command)
    return report


async def set_commands_visibility(
    client: BitrixClient, visible: bool, dry_run: bool = False
) -> CommandSyncReport:
    """Show or hide every registered command.

    Commands already in the requested state are skipped. With ``dry_run``
    the would-be updates are reported without calling Bitrix24.
    """
    report = CommandSyncReport()
    target_hidden = not visible

    for command in await client.list_commands():
        command_id = _command_id(command)
        if not command_id:
            continue
        if _is_hidden(command) == target_hidden:
            report.skipped.append(command_id)
            continue
        if dry_run:
            logger.info("Would set command %s HIDDEN=%s", command_id, "Y" if target_hidden else "N")
            report.updated.append(command_id)
            continue
        try:
            await client.update_command(command_id, {"HIDDEN": "Y" if target_hidden else "N"})
        except Exception as e:
            logger.error("Failed to update command %s: %s", command_id, e)
            report.failed.append(command_id)
            continue
        report.updated.append(command_id)

    logger.info(
        "Command visibility: %d updated, %d failed, %d skipped",
        len(report.updated),
        len(report.failed),
        len(report.skipped),
    )
    return report
