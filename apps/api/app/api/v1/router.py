from fastapi import APIRouter

from app.api.v1.endpoints import (
    auth,
    billing,
    features,
    health,
    subscription,
    system,
    webhooks,
)

router = APIRouter()
router.include_router(health.router)
router.include_router(auth.router)
router.include_router(subscription.router)
router.include_router(features.router)
router.include_router(billing.router)
router.include_router(webhooks.router)
router.include_router(system.router)
