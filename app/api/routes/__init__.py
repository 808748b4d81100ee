"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.webhook_events import router as webhook_events_router
from app.api.webhooks.shopify import router as shopify_router
from app.api.webhooks.sites import router as sites_router
from app.api.webhooks.stripe import router as stripe_router

router = APIRouter()

router.include_router(shopify_router, prefix="/webhooks/shopify", tags=["webhooks"])
router.include_router(stripe_router, prefix="/webhooks/stripe", tags=["webhooks"])
router.include_router(sites_router, prefix="/webhooks/sites", tags=["webhooks"])
router.include_router(
    webhook_events_router,
    prefix="/admin/webhook-events",
    tags=["admin"],
)
