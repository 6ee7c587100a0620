"""Conversion between Bitrix24 BBCode and markdown.

Bitrix24 chat understands ``[B] [I] [U] [S] [URL]`` tag pairs and ``>>``
quotes, but has no code primitive, no headers and no tables. Conversion is
therefore lossy: code blocks become tab-indented lines, headers become bold,
tables become pipe-separated plain lines and underline comes back from
markdown as bold.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

TEXT_CHUNK_LIMIT = 4000

_FENCED_CODE = re.compile(r"```[\w+-]*\n?([\s\S]*?)```")
_PLACEHOLDER = "\x00{}\x00"
_PLACEHOLDER_RE = re.compile(r"\x00(\d+)\x00")

# Raw URLs not already inside [URL=...] or [URL]...[/URL]
_RAW_URL = re.compile(r"(?<![=\]])(https?://[^\s<>\[\]\"'*]+)", re.IGNORECASE)
_MD_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
# Emphasis may open after punctuation but never inside a word
_MD_ITALIC_STAR = re.compile(r"(?<![\w*])\*(?![\s*])([^*\n]+?)(?<![\s*])\*(?![\w*])")
_MD_ITALIC_UNDERSCORE = re.compile(r"(?<![\w_])_(?![\s_])([^_\n]+?)(?<![\s_])_(?![\w_])")
_TRAILING_PUNCT = re.compile(r"[)\].,!?;:']+$")


def _wrap_raw_url(match: re.Match[str]) -> str:
    url = match.group(1)
    trailing = _TRAILING_PUNCT.search(url)
    if trailing:
        clean = url[: trailing.start()]
        return f"[URL]{clean}[/URL]{trailing.group(0)}"
    return f"[URL]{url}[/URL]"


def _convert_table_row(match: re.Match[str]) -> str:
    return re.sub(r"\s*\|\s*", " | ", match.group(1))


def markdown_to_bb(text: str) -> str:
    """Convert markdown produced by the agent into Bitrix24 BBCode."""
    if not text:
        return text
    try:
        protected: list[str] = []

        def _protect_code(match: re.Match[str]) -> str:
            code = match.group(1).strip("\n").rstrip()
            protected.append("\n".join(f"\t{line}" for line in code.split("\n")))
            return _PLACEHOLDER.format(len(protected) - 1)

        def _protect_url(match: re.Match[str]) -> str:
            protected.append(_wrap_raw_url(match))
            return _PLACEHOLDER.format(len(protected) - 1)

        def _protect_link(match: re.Match[str]) -> str:
            protected.append(match.group(2))
            target = _PLACEHOLDER.format(len(protected) - 1)
            return f"[URL={target}]{match.group(1)}[/URL]"

        result = _FENCED_CODE.sub(_protect_code, text)

        result = re.sub(r"^[-*_]{3,}[ \t]*$", "────────────", result, flags=re.MULTILINE)
        result = re.sub(r"^#{1,6}[ \t]+(.+?)[ \t]*#*[ \t]*$", r"[B]\1[/B]", result, flags=re.MULTILINE)
        result = re.sub(r"^[*\-+][ \t]+(.+)$", r"• \1", result, flags=re.MULTILINE)

        # Links and URLs first so emphasis rules never see their underscores
        result = _MD_LINK.sub(_protect_link, result)
        result = _RAW_URL.sub(_protect_url, result)

        result = re.sub(r"\*\*\*(.+?)\*\*\*", r"[B][I]\1[/I][/B]", result)
        result = re.sub(r"\*\*(.+?)\*\*", r"[B]\1[/B]", result)
        result = re.sub(r"__(.+?)__", r"[B]\1[/B]", result)
        # No code tag in Bitrix24
        result = re.sub(r"`([^`\n]+)`", r"[B]\1[/B]", result)
        result = _MD_ITALIC_STAR.sub(r"[I]\1[/I]", result)
        result = _MD_ITALIC_UNDERSCORE.sub(r"[I]\1[/I]", result)
        result = re.sub(r"~~(.+?)~~", r"[S]\1[/S]", result)

        result = re.sub(r"^\|[ \t\-:|]+\|[ \t]*$\n?", "", result, flags=re.MULTILINE)
        result = re.sub(r"^\|[ \t]*(.+?)[ \t]*\|[ \t]*$", _convert_table_row, result, flags=re.MULTILINE)

        result = re.sub(r"^>[ \t]?(.*)$", r">>\1", result, flags=re.MULTILINE)

        result = _PLACEHOLDER_RE.sub(lambda m: protected[int(m.group(1))], result)
        result = re.sub(r"\n{3,}", "\n\n", result)
        return result.strip("\n ")
    except re.error as exc:
        logger.error("markdown_to_bb failed, sending raw text: %s", exc)
        return text


def bb_to_markdown(text: str) -> str:
    """Convert inbound Bitrix24 BBCode into the host's markdown dialect."""
    if not text:
        return text
    flags = re.IGNORECASE | re.DOTALL

    def _code_block(match: re.Match[str]) -> str:
        return f"```\n{match.group(1).strip()}\n```"

    result = re.sub(r"\[CODE\](.*?)\[/CODE\]", _code_block, text, flags=flags)
    result = re.sub(r"\[BR\]", "\n", result, flags=re.IGNORECASE)
    result = re.sub(r"\[B\](.*?)\[/B\]", r"**\1**", result, flags=flags)
    result = re.sub(r"\[I\](.*?)\[/I\]", r"*\1*", result, flags=flags)
    result = re.sub(r"\[U\](.*?)\[/U\]", r"__\1__", result, flags=flags)
    result = re.sub(r"\[S\](.*?)\[/S\]", r"~~\1~~", result, flags=flags)
    result = re.sub(r"\[URL=([^\]]+)\](.*?)\[/URL\]", r"[\2](\1)", result, flags=flags)
    result = re.sub(r"\[URL\](.*?)\[/URL\]", r"\1", result, flags=flags)
    # Mentions and decorations keep only their visible text
    result = re.sub(r"\[(USER|CHAT|COLOR|SIZE|SEND|PUT)=[^\]]*\](.*?)\[/\1\]", r"\2", result, flags=flags)
    result = re.sub(r"\[ICON=[^\]]*\]", "", result, flags=re.IGNORECASE)
    result = re.sub(r"^>>[ \t]?(.*)$", r"> \1", result, flags=re.MULTILINE)
    return result


def split_text(text: str, limit: int = TEXT_CHUNK_LIMIT) -> list[str]:
    """Split text into chunks of at most ``limit`` characters.

    Prefers newline boundaries, then spaces, as long as the split point is in
    the second half of the window; otherwise cuts hard at ``limit``.
    """
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_index = remaining.rfind("\n", 0, limit)
        if split_index == -1 or split_index < limit // 2:
            split_index = remaining.rfind(" ", 0, limit)
        if split_index == -1 or split_index < limit // 2:
            split_index = limit
        chunk = remaining[:split_index].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_index:].strip()
    return chunks
