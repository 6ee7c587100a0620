"""Tolerant parsing of Bitrix24 webhook bodies.

Bitrix24 posts events either as JSON or as ``application/x-www-form-urlencoded``
bodies with bracket-path keys (``data[PARAMS][MESSAGE]=hello``). Both are
rebuilt into the same nested mapping, then normalized into envelopes whose
fields are all optional until the pipeline validates them.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any
from urllib.parse import parse_qsl

from bitrix_connector.bitrix.types import (
    CommandEnvelope,
    InboundEvent,
    MessageEnvelope,
    classify_event,
)
from bitrix_connector.errors import PayloadValidationError

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])*)$")
_SEGMENT_RE = re.compile(r"\[([^\[\]]*)\]")

# Sections keyed by an id level that carries no meaning for the connector:
# data[BOT][<bot id>][FIELD] and data[COMMAND][<n>][FIELD]
_COLLAPSED_SECTIONS = ("BOT", "COMMAND")

# A bare numeric parameter above this is read as a disk file id
AMBIGUOUS_FILE_ID_MIN = 1000


def _split_key(key: str) -> list[str] | None:
    match = _KEY_RE.match(key)
    if not match:
        return None
    path = [match.group(1)]
    path.extend(_SEGMENT_RE.findall(match.group(2)))
    if any(segment == "" for segment in path[1:]):
        # "a[]" style append keys are not used by Bitrix24
        return None
    return path


def _collapse_path(path: list[str]) -> list[str]:
    if len(path) >= 4 and path[0] == "data" and path[1] in _COLLAPSED_SECTIONS:
        return path[:2] + path[3:]
    return path


def _assign(target: dict[str, Any], path: list[str], value: str) -> bool:
    node = target
    for segment in path[:-1]:
        child = node.get(segment)
        if child is None:
            child = {}
            node[segment] = child
        elif not isinstance(child, dict):
            return False
        node = child
    leaf = path[-1]
    if isinstance(node.get(leaf), dict):
        return False
    node[leaf] = value
    return True


def parse_form_body(body: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in parse_qsl(body, keep_blank_values=True):
        path = _split_key(key)
        if path is None:
            logger.debug("Ignoring malformed form key: %s", key)
            continue
        if not _assign(result, _collapse_path(path), value):
            logger.debug("Ignoring conflicting form key: %s", key)
    return result


def _first_nested(section: object) -> object:
    """Unwrap ``{"<id>": {...}}`` or ``[{...}]`` into the inner mapping."""
    if isinstance(section, list):
        return section[0] if section and isinstance(section[0], dict) else section
    if isinstance(section, dict) and section:
        values = list(section.values())
        if all(isinstance(v, dict) for v in values) and all(
            str(k).isdigit() for k in section
        ):
            return values[0]
    return section


def normalize_json_payload(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, dict):
        data = dict(data)
        for section in _COLLAPSED_SECTIONS:
            if section in data:
                data[section] = _first_nested(data[section])
        payload = {**payload, "data": data}
    return payload


def parse_webhook_body(raw: bytes, content_type: str | None = None) -> dict[str, Any]:
    """Decode a webhook body into a nested mapping.

    Raises:
        PayloadValidationError: the body is not valid UTF-8 or not valid JSON
            when it claims to be JSON.
    """
    if not raw:
        return {}
    try:
        body = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise PayloadValidationError("Body is not valid UTF-8") from e

    ctype = (content_type or "").lower()
    if ctype.startswith("application/json") or body.lstrip().startswith("{"):
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise PayloadValidationError("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise PayloadValidationError("JSON payload must be an object")
        return normalize_json_payload(payload)

    return parse_form_body(body)


def build_event(payload: Mapping[str, Any]) -> InboundEvent:
    event_name = payload.get("event")
    data = payload.get("data")
    if not isinstance(event_name, str) or not event_name.strip() or not isinstance(data, dict):
        raise PayloadValidationError("Invalid payload")
    return InboundEvent(
        event_type=classify_event(event_name),
        event_name=event_name.strip().upper(),
        raw_payload=MappingProxyType(dict(payload)),
    )


def _str(value: object) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name)
    return section if isinstance(section, dict) else {}


def _first(*values: object) -> str | None:
    for value in values:
        text = _str(value)
        if text:
            return text
    return None


def _timestamp_ms(ts: str | None) -> int:
    if ts:
        try:
            return int(float(ts)) * 1000
        except ValueError:
            logger.debug("Unparseable event timestamp: %s", ts)
    return int(time.time() * 1000)


def _ids_from(value: object) -> list[str]:
    if isinstance(value, dict):
        ids: list[str] = []
        for key, item in value.items():
            if isinstance(item, dict):
                ident = _first(item.get("id"), item.get("ID"), key)
            else:
                ident = _str(item)
            if ident and ident.isdigit():
                ids.append(ident)
        return ids
    if isinstance(value, list):
        return _ids_from({str(n): v for n, v in enumerate(value)})
    ident = _str(value)
    return [ident] if ident and ident.isdigit() else []


def _looks_like_file_id(value: object) -> str | None:
    text = _str(value)
    if text and text.isdigit() and int(text) >= AMBIGUOUS_FILE_ID_MIN:
        return text
    return None


def detect_file_references(params: Mapping[str, Any], text: str) -> tuple[list[str], list[str]]:
    """Find disk file ids referenced by a message.

    Returns ``(explicit, ambiguous)``. Explicit ids come from ``FILES`` or
    ``PARAMS.FILE_ID``. When the text is empty, a bare ``PARAMS`` scalar or a
    ``FILE_ID`` holding a large integer is taken as a file reference too; this
    is a guess over inconsistent client payloads and is logged as such.
    """
    explicit: list[str] = []
    explicit.extend(_ids_from(params.get("FILES")))
    nested = params.get("PARAMS")
    if isinstance(nested, dict):
        explicit.extend(_ids_from(nested.get("FILE_ID")))

    ambiguous: list[str] = []
    if not explicit and not text.strip():
        candidates = [params.get("FILE_ID")]
        if not isinstance(nested, dict):
            candidates.insert(0, nested)
        for candidate in candidates:
            file_id = _looks_like_file_id(candidate)
            if file_id and file_id not in ambiguous:
                ambiguous.append(file_id)
        if ambiguous:
            logger.info("Ambiguous file reference in empty message, treating as file: %s", ambiguous)

    return list(dict.fromkeys(explicit)), ambiguous


def _sender_name(user: Mapping[str, Any], sender_id: str | None) -> str:
    name = _str(user.get("NAME"))
    if name:
        return name
    full = f"{_str(user.get('FIRST_NAME')) or ''} {_str(user.get('LAST_NAME')) or ''}".strip()
    return full or f"User{sender_id or ''}"


def extract_message(event: InboundEvent) -> MessageEnvelope:
    data = event.data
    params = _section(data, "PARAMS")
    user = _section(data, "USER")
    bot = _section(data, "BOT")

    sender_id = _first(
        params.get("FROM_USER_ID"),
        params.get("AUTHOR_ID"),
        data.get("AUTHOR_ID"),
        data.get("FROM_USER_ID"),
        user.get("ID"),
    )
    text = _first(params.get("MESSAGE"), data.get("MESSAGE")) or ""
    explicit, ambiguous = detect_file_references(params, text)

    return MessageEnvelope(
        sender_id=sender_id,
        sender_name=_sender_name(user, sender_id),
        dialog_id=_first(params.get("DIALOG_ID"), data.get("DIALOG_ID")),
        chat_id=_first(params.get("TO_CHAT_ID"), params.get("CHAT_ID"), data.get("CHAT_ID")),
        chat_type=_first(params.get("CHAT_TYPE"), data.get("CHAT_TYPE")) or "P",
        message_id=_first(params.get("MESSAGE_ID"), data.get("MESSAGE_ID")),
        text=text,
        timestamp_ms=_timestamp_ms(event.ts),
        bot_id=_first(bot.get("BOT_ID"), data.get("BOT_ID")),
        explicit_file_ids=tuple(explicit),
        ambiguous_file_ids=tuple(ambiguous),
    )


def extract_command(event: InboundEvent) -> CommandEnvelope:
    data = event.data
    base = extract_message(event)
    command = _section(data, "COMMAND")
    params = _section(data, "PARAMS")

    command_name = _first(command.get("COMMAND"), data.get("COMMAND"))
    sender_id = _first(params.get("FROM_USER_ID"), _section(data, "USER").get("ID"), data.get("AUTHOR_ID"))
    return CommandEnvelope(
        sender_id=sender_id,
        sender_name=_sender_name(_section(data, "USER"), sender_id),
        dialog_id=base.dialog_id or sender_id,
        chat_id=base.chat_id,
        chat_type=base.chat_type,
        message_id=base.message_id,
        text=base.text,
        timestamp_ms=base.timestamp_ms,
        bot_id=_first(command.get("BOT_ID"), base.bot_id),
        command=command_name.lstrip("/") if command_name else None,
        command_id=_first(command.get("COMMAND_ID")),
        command_params=_first(command.get("COMMAND_PARAMS")) or "",
        command_context=_first(command.get("COMMAND_CONTEXT")) or "TEXTAREA",
    )
