from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from bitrix_connector.settings import Settings

from .provider import ChannelConfigProvider


def _section_from_settings(settings: Settings) -> dict[str, Any]:
    # minimal default account from the environment
    data: dict[str, Any] = {
        "domain": settings.bitrix24_domain,
        "webhookSecret": settings.bitrix24_webhook_secret,
    }
    if settings.bitrix24_user_id:
        data["userId"] = settings.bitrix24_user_id
    if settings.bitrix24_bot_id:
        data["botId"] = settings.bitrix24_bot_id
    if settings.bitrix24_client_id:
        data["clientId"] = settings.bitrix24_client_id
    return data


def load_channel_config(path: str | Path | None, settings: Settings) -> ChannelConfigProvider:
    """Load the ``channels.bitrix24`` section from a JSON file.

    The file may hold the full host config (``{"channels": {"bitrix24": ...}}``)
    or just the section itself. Environment values fill the default account
    when the file is absent or leaves them out.
    """
    env_section = _section_from_settings(settings)
    if not path or not Path(path).exists():
        return ChannelConfigProvider(env_section)

    with Path(path).open("r", encoding="utf-8") as f:
        data = json.load(f)

    # Basic validation to fail fast on common mistakes
    if not isinstance(data, dict):
        msg = "Channel config JSON root must be an object"
        raise TypeError(msg)
    channels = data.get("channels")
    if isinstance(channels, dict):
        section = channels.get("bitrix24", {})
    else:
        section = data
    if not isinstance(section, dict):
        msg_section = "'channels.bitrix24' must be an object"
        raise ValueError(msg_section)
    accounts = section.get("accounts", {})
    if accounts is not None and not isinstance(accounts, dict):
        msg_accounts = "'accounts' must be an object"
        raise ValueError(msg_accounts)

    merged = dict(section)
    for key, value in env_section.items():
        if value and not merged.get(key):
            merged[key] = value
    return ChannelConfigProvider(merged)
