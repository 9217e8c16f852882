from fastapi import APIRouter

from .endpoints.subscriptions import router as subscriptions_router
from .endpoints.webhooks import router as webhooks_router

router = APIRouter(prefix="/billing", tags=["billing"])

router.include_router(subscriptions_router, include_in_schema=True)
router.include_router(webhooks_router, include_in_schema=True)

__all__ = ['router']
