from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_ACCOUNT_ID = "default"
DM_POLICIES = ("open", "pairing", "allowlist")


@dataclass(slots=True)
class CustomCommand:
    command: str
    title: str = ""
    params: str = ""
    common: bool = False
    hidden: bool = False


@dataclass(slots=True)
class Account:
    account_id: str
    name: str = ""
    enabled: bool = False
    domain: str = ""
    webhook_secret: str = ""
    user_id: str | None = None
    bot_id: str | None = None
    client_id: str | None = None
    dm_policy: str | None = None
    asr_provider: str | None = None
    custom_commands: list[CustomCommand] = field(default_factory=list)

    @property
    def is_configured(self) -> bool:
        return bool(self.domain.strip()) and bool(self.webhook_secret.strip())


def _str_or_none(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_custom_commands(raw: object) -> list[CustomCommand]:
    commands: list[CustomCommand] = []
    if not isinstance(raw, list):
        return commands
    for item in raw:
        if isinstance(item, str):
            name = item.strip().lstrip("/")
            if name:
                commands.append(CustomCommand(command=name))
            continue
        if not isinstance(item, dict):
            continue
        name = str(item.get("command", "")).strip().lstrip("/")
        if not name:
            continue
        commands.append(
            CustomCommand(
                command=name,
                title=str(item.get("title", "") or ""),
                params=str(item.get("params", "") or ""),
                common=bool(item.get("common", False)),
                hidden=bool(item.get("hidden", False)),
            )
        )
    return commands


class ChannelConfigProvider:
    """Resolves Bitrix24 accounts from the ``channels.bitrix24`` config section.

    The section holds a default account at the top level plus an optional
    ``accounts`` map of named accounts. The config file is read once at
    startup; accounts are rebuilt from the in-memory section on every call,
    so changes made to ``section`` apply to the next resolution.
    """

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = data

    @property
    def section(self) -> dict[str, Any]:
        return self._data

    @property
    def asr_provider(self) -> str | None:
        return _str_or_none(self._data.get("asrProvider"))

    def _named_accounts(self) -> dict[str, Any]:
        accounts = self._data.get("accounts")
        return accounts if isinstance(accounts, dict) else {}

    def list_account_ids(self) -> list[str]:
        ids: list[str] = []
        if self._data.get("domain") or self._data.get("webhookSecret"):
            ids.append(DEFAULT_ACCOUNT_ID)
        ids.extend(str(k) for k in self._named_accounts())
        return ids

    def default_account_id(self) -> str:
        ids = self.list_account_ids()
        return ids[0] if ids else DEFAULT_ACCOUNT_ID

    def resolve_account(self, account_id: str | None = None) -> Account:
        resolved_id = account_id or self.default_account_id()
        if resolved_id == DEFAULT_ACCOUNT_ID:
            raw: object = self._data
            fallback_name = "default"
        else:
            raw = self._named_accounts().get(resolved_id)
            fallback_name = resolved_id
        if not isinstance(raw, dict):
            return Account(account_id=resolved_id)
        return self._build_account(resolved_id, raw, fallback_name)

    @staticmethod
    def _build_account(account_id: str, raw: dict[str, Any], fallback_name: str) -> Account:
        domain = str(raw.get("domain", "") or "").strip()
        dm_policy = _str_or_none(raw.get("dmPolicy"))
        if dm_policy not in DM_POLICIES:
            dm_policy = None
        enabled = raw.get("enabled")
        return Account(
            account_id=account_id,
            name=str(raw.get("name") or domain or fallback_name),
            enabled=True if enabled is None else bool(enabled),
            domain=domain,
            webhook_secret=str(raw.get("webhookSecret", "") or ""),
            user_id=_str_or_none(raw.get("userId")),
            bot_id=_str_or_none(raw.get("botId")),
            client_id=_str_or_none(raw.get("clientId")),
            dm_policy=dm_policy,
            asr_provider=_str_or_none(raw.get("asrProvider")),
            custom_commands=_parse_custom_commands(raw.get("customCommands")),
        )
