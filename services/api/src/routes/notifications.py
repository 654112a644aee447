from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from models.identity import Identity
from models.operations.notifications import (
    notification_mark_all_read,
    notification_mark_read,
    notifications_get_mine,
)
from utils import log

from .dependencies import current_identity_get, require_identity

logger = log.get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/", response_model=List[Dict[str, Any]])
async def route_notifications_mine(
    unread_only: bool = False,
    limit: Optional[int] = Query(None, ge=1, le=500),
    identity: Optional[Identity] = Depends(current_identity_get),
):
    notifications = await notifications_get_mine(identity, unread_only=unread_only, limit=limit)
    return [{"id": n.id, **n.data.model_dump()} for n in notifications]


@router.post("/read-all", response_model=Dict[str, int])
async def route_notifications_mark_all_read(identity: Identity = Depends(require_identity)):
    return {"updated": await notification_mark_all_read(identity)}


@router.post("/{notification_id}/read", response_model=Dict[str, Any])
async def route_notification_mark_read(
    notification_id: str,
    identity: Identity = Depends(require_identity),
):
    notification = await notification_mark_read(identity, notification_id)
    return {"id": notification.id, **notification.data.model_dump()}
