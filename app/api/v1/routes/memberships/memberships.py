"""Membership endpoints - current allowance, member cancellation and admin credit corrections."""

from __future__ import annotations

from uuid import UUID, uuid4

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.core.exceptions import NotFoundError
from app.core.logging_config import get_logger
from app.core.response import ResponseModel, success_response
from app.core.security import require_roles
from app.db.deps import get_db
from app.models.membership import Membership
from app.models.user import User
from app.schemas.booking import CreditAdjustRequest, CreditBalanceOut
from app.schemas.payments import ActivationOut, MembershipCancellationOut
from app.services.booking.allowance import EntitlementService, get_active_membership
from app.services.booking.ledger import CreditLedger
from app.services.payments.membership_service import MembershipService
from app.services.payments.stripe_client import get_optional_stripe_client
from app.services.payments.upgrade_scheduler import UpgradeScheduler
from app.utils.enums import Role

logger = get_logger(__name__)
router = APIRouter(prefix="/memberships", tags=["memberships"])


@router.get("/me", response_model=ResponseModel)
async def my_membership(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    membership = await get_active_membership(db, current_user.id)
    if membership is None:
        return success_response(msg="No active membership", data=None)
    remaining = await EntitlementService(db).remaining_allowance(membership)
    return success_response(
        msg="Active membership",
        data={
            "membership_id": str(membership.id),
            "plan_id": str(membership.plan_id),
            "status": membership.status.value,
            "start_date": membership.start_date.isoformat(),
            "end_date": membership.end_date.isoformat() if membership.end_date else None,
            "remaining": remaining,
        },
    )


@router.post("/me/cancel", response_model=ResponseModel)
async def cancel_my_membership(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_optional_stripe_client),
):
    """Stop renewing the current membership; it stays usable until its end date."""
    membership = await MembershipService(db).request_cancellation(current_user.id, stripe_client)
    await db.commit()
    return success_response(
        msg="Membership scheduled for cancellation",
        data=MembershipCancellationOut(
            membership_id=membership.id,
            end_date=membership.end_date,
            cancellation_requested_at=membership.usage_data["cancellation_requested_at"],
        ).model_dump(mode="json"),
    )


@router.post("/{membership_id}/credits", response_model=ResponseModel)
async def adjust_credits(
    membership_id: UUID,
    req: CreditAdjustRequest,
    admin: User = Depends(require_roles(Role.admin)),
    db: AsyncSession = Depends(get_db),
):
    """Admin correction of a credit balance (add, subtract or set)."""
    if await db.get(Membership, membership_id) is None:
        raise NotFoundError("Membership not found")

    key = req.idempotency_key or f"admin:{admin.id}:{uuid4()}"
    result = await CreditLedger(db).adjust(membership_id, req.action, req.amount, key)
    await db.commit()
    if result is None:
        return success_response(msg="Plan has no credit balance; nothing changed", data=None)

    logger.info(
        f"Admin {admin.id} adjusted credits on {membership_id}: {req.action.value} {req.amount} "
        f"({req.reason or 'no reason given'})"
    )
    return success_response(
        msg="Credits updated",
        data=CreditBalanceOut.model_validate(result).model_dump(mode="json"),
    )


@router.post("/activate-due", response_model=ResponseModel)
async def activate_due_memberships(
    admin: User = Depends(require_roles(Role.admin)),
    db: AsyncSession = Depends(get_db),
):
    """Activate pending upgrades whose start date has arrived (cron hook)."""
    activated = await UpgradeScheduler(db).activate_due_memberships()
    await db.commit()
    return success_response(
        msg=f"Activated {len(activated)} membership(s)",
        data=ActivationOut(activated=activated).model_dump(mode="json"),
    )
