from fastapi import APIRouter
from utils import log

from .auctions import router as auctions_router
from .flash_deals import router as flash_deals_router
from .internal import router as internal_router
from .notifications import router as notifications_router
from .payments import router as payments_router
from .users import router as users_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(users_router)
router.include_router(auctions_router)
router.include_router(flash_deals_router)
router.include_router(payments_router)
router.include_router(notifications_router)
router.include_router(internal_router)


@router.get("/health", tags=["meta"])
async def route_health():
    return {"status": "ok"}
