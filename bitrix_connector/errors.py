"""Error taxonomy for the Bitrix24 connector.

Only ``PayloadValidationError`` ever reaches the HTTP layer as a non-200
status. Everything else is logged where it happens and either dropped
silently (secret mismatch), degraded to placeholder text (extraction) or
turned into a user-facing fallback message (dispatch).
"""

from __future__ import annotations


class ConnectorError(Exception):
    """Base error for the connector."""


class PayloadValidationError(ConnectorError):
    """The webhook body is malformed or structurally incomplete."""


class BitrixApiError(ConnectorError):
    """A Bitrix24 REST call failed at the HTTP or API level."""

    def __init__(self, method: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.status_code = status_code


class DispatchTimeoutError(ConnectorError):
    """The agent dispatcher did not finish before its deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"agent dispatch exceeded {timeout_seconds:.0f}s")
        self.timeout_seconds = timeout_seconds


class ExtractionError(ConnectorError):
    """A content extractor could not describe an attachment."""
