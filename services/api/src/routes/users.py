from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from models.entities.couchbase.common import Location
from models.entities.couchbase.users import RestaurantInfo
from models.identity import Identity
from models.operations.users import user_resolve, user_update_profile
from utils import log

from .dependencies import require_identity

logger = log.get_logger(__name__)

router = APIRouter(tags=["users"])


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    avatar: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[Location] = None
    categories: Optional[List[str]] = None
    push_token: Optional[str] = None
    restaurant_info: Optional[RestaurantInfo] = None


@router.get("/user_data", response_model=Dict[str, Any])
async def route_user_data_get(identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
    """
    Returns the authenticated user's profile, creating it on first sight.
    """
    user = await user_resolve(identity)
    return {"id": user.id, **user.data.model_dump()}


@router.put("/user_data/profile", response_model=Dict[str, Any])
async def route_user_profile_update(
    body: ProfileUpdateRequest,
    identity: Identity = Depends(require_identity),
) -> Dict[str, Any]:
    user = await user_update_profile(identity, body.model_dump(exclude_none=True))
    return {"id": user.id, **user.data.model_dump()}
