from __future__ import annotations

import logging
import re
import tempfile
import time
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.\-]+", re.UNICODE)


def attachment_temp_dir(configured: str | None = None) -> Path:
    base = Path(configured) if configured else Path(tempfile.gettempdir()) / "bitrix24-attachments"
    base.mkdir(parents=True, exist_ok=True)
    return base


def build_temp_path(directory: Path, attachment_id: int | str, name: str) -> Path:
    """``<attachment id>_<epoch ms>_<name>`` so concurrent requests never collide."""
    safe_name = _UNSAFE_CHARS.sub("_", Path(name or "file").name) or "file"
    return directory / f"{attachment_id}_{int(time.time() * 1000)}_{safe_name}"


def remove_quietly(*paths: Path | None) -> None:
    for path in paths:
        if path is None:
            continue
        try:
            path.unlink(missing_ok=True)
            logger.debug("Cleaned up temp file: %s", path)
        except OSError as e:
            logger.warning("Failed to clean up temp file %s: %s", path, e)
