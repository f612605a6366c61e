# Main Router - app/api/v1/router.py
from fastapi import APIRouter

from app.api.v1.routes.bookings.bookings import router as bookings_router
from app.api.v1.routes.memberships.memberships import router as memberships_router
from app.api.v1.routes.payments import (
    checkout_router,
    events_router,
    stripe_webhooks_router,
)

router = APIRouter()

# Webhook routes (signature / admin token, no member session)
router.include_router(stripe_webhooks_router)
router.include_router(events_router)

# Member routes (bearer token)
router.include_router(bookings_router)
router.include_router(memberships_router)
router.include_router(checkout_router)
