from __future__ import annotations

from fastapi import APIRouter, Request, Response

from bitrix_connector.core.app_context import get_app_context

from .webhook import WEBHOOK_PATH, handle_bitrix_webhook

router = APIRouter()


@router.post(WEBHOOK_PATH)
async def bitrix_webhook_post(request: Request) -> Response:
    """Handle incoming Bitrix24 events (JSON or form-encoded)."""
    return await handle_bitrix_webhook(request)


@router.get("/chan/bitrix24/health")
async def bitrix_health(request: Request) -> dict[str, object]:
    """Probe the default account's credentials against Bitrix24."""
    ctx = get_app_context(request.app)  # type: ignore[arg-type]
    account = ctx.accounts.resolve_account(None)
    if not account.is_configured:
        return {"ok": False, "domain": account.domain}
    ok = await ctx.client_for(account).health()
    return {"ok": ok, "domain": account.domain}
