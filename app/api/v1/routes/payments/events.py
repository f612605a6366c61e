"""Internal billing-event ingress for events verified upstream."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging_config import get_logger
from app.core.response import ResponseModel, success_response
from app.core.security import require_roles
from app.db.deps import get_db
from app.schemas.payments import EventOutcomeOut, PaymentEventIn
from app.services.payments.event_processor import PaymentEventProcessor
from app.services.payments.stripe_client import get_optional_stripe_client
from app.utils.enums import Role

logger = get_logger(__name__)
router = APIRouter(prefix="/payments", tags=["webhooks"])


@router.post(
    "/events",
    response_model=ResponseModel,
    dependencies=[Depends(require_roles(Role.admin))],
)
async def ingest_payment_event(
    event: PaymentEventIn,
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_optional_stripe_client),
):
    """Apply one billing event. Replays answer 200 with duplicate=true."""
    outcome = await PaymentEventProcessor(db, stripe_client=stripe_client).process(
        event.event_id,
        event.event_type,
        event.payload,
        metadata=event.metadata,
        source=event.source,
    )
    msg = "Duplicate event ignored" if outcome.duplicate else "Event processed"
    return success_response(msg=msg, data=EventOutcomeOut(**asdict(outcome)).model_dump(mode="json"))
