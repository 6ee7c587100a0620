"""Bitrix24 webhook handler.

Parsing and classification happen inside the request; everything after that
(secret verification, enrichment, agent dispatch) is scheduled on the
message processor so Bitrix24 gets its acknowledgement immediately.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from bitrix_connector.bitrix.message_processor import BitrixMessageProcessor
from bitrix_connector.bitrix.payload_parser import build_event, parse_webhook_body
from bitrix_connector.core.app_context import AppContext, get_app_context
from bitrix_connector.core.logging import event_ctx_var, mask_secret
from bitrix_connector.errors import PayloadValidationError

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/chan/bitrix24/webhook"


def _client_ip(request: Request) -> str:
    return request.headers.get(
        "x-forwarded-for", request.client.host if request.client else "unknown"
    )


def get_processor(ctx: AppContext) -> BitrixMessageProcessor:
    if ctx.processor is None:
        ctx.processor = BitrixMessageProcessor(ctx)
    return ctx.processor


async def handle_bitrix_webhook(request: Request) -> Response:
    secret = request.query_params.get("secret")
    account_id = request.query_params.get("account") or None

    try:
        raw_body = await request.body()
        payload = parse_webhook_body(raw_body, request.headers.get("content-type"))
        event = build_event(payload)
    except PayloadValidationError as e:
        logger.warning("Invalid webhook payload from IP %s: %s", _client_ip(request), e)
        return JSONResponse({"error": "Invalid payload"}, status_code=status.HTTP_400_BAD_REQUEST)
    except Exception as e:
        logger.error("Webhook processing error from IP %s: %s", _client_ip(request), e, exc_info=True)
        return JSONResponse(
            {"error": "Internal error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    event_ctx_var.set(event.event_name)
    logger.info(
        "Received Bitrix24 webhook event %s (%s), secret=%s",
        event.event_name,
        event.event_type.value,
        mask_secret(secret),
    )

    try:
        processor = get_processor(get_app_context(request.app))  # type: ignore[arg-type]
        processor.schedule(event, secret, account_id)
    except Exception as e:
        logger.error("Failed to schedule %s: %s", event.event_name, e, exc_info=True)
        return JSONResponse(
            {"error": "Internal error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    return JSONResponse({"success": True})
