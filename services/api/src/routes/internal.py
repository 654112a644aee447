"""
Internal endpoints for external schedulers (cron, k8s CronJob).
Secured with INTERNAL_API_KEY, not exposed publicly.
"""

from typing import Dict, Optional

import conf
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from models.operations.auctions import auctions_expire
from models.operations.flash_deals import (
    flash_deal_send_notifications,
    flash_deals_activate_scheduled,
    flash_deals_expire,
)
from models.operations.notifications import push_dispatch_pending
from sweeps.scheduler import run_time_sweeps
from utils import log

logger = log.get_logger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])

# ---------------------------------------------------------------------------
# Auth: API key guard
# ---------------------------------------------------------------------------


async def require_internal_api_key(
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-API-Key"),
):
    expected = conf.get_internal_api_key()
    if not expected:
        # No key configured: allow all internal callers (local development)
        return
    if x_internal_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/sweeps/run", response_model=Dict[str, int])
async def internal_run_sweeps(_: None = Depends(require_internal_api_key)):
    """Run activation, expiry and auction expiry once."""
    return await run_time_sweeps()


@router.post("/sweeps/flash-deals/activate", response_model=Dict[str, int])
async def internal_activate_flash_deals(_: None = Depends(require_internal_api_key)):
    return {"activated": await flash_deals_activate_scheduled()}


@router.post("/sweeps/flash-deals/expire", response_model=Dict[str, int])
async def internal_expire_flash_deals(_: None = Depends(require_internal_api_key)):
    return {"expired": await flash_deals_expire()}


@router.post("/sweeps/auctions/expire", response_model=Dict[str, int])
async def internal_expire_auctions(_: None = Depends(require_internal_api_key)):
    return {"expired": await auctions_expire()}


@router.post("/flash-deals/{deal_id}/notify", response_model=Dict[str, int])
async def internal_flash_deal_notify(deal_id: str, _: None = Depends(require_internal_api_key)):
    """Run the one-shot nearby-user fan-out for a deal (no-op once sent)."""
    return {"notified": await flash_deal_send_notifications(deal_id)}


@router.post("/push/dispatch", response_model=Dict[str, int])
async def internal_push_dispatch(
    limit: int = Query(200, ge=1, le=1000),
    _: None = Depends(require_internal_api_key),
):
    return await push_dispatch_pending(limit=limit)
