"""Checkout endpoints - memberships, credit top-ups, products, upgrades and credit conversions."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.core.logging_config import get_logger
from app.core.response import ResponseModel, success_response
from app.db.deps import get_db
from app.models.user import User
from app.schemas.payments import CheckoutOut, CheckoutRequest, UpgradeCheckoutRequest
from app.services.payments.checkout_service import CheckoutService
from app.services.payments.stripe_client import get_stripe_client

logger = get_logger(__name__)
router = APIRouter(prefix="/checkout", tags=["payments"])


@router.post("", response_model=ResponseModel)
async def create_checkout(
    req: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    """Create a Stripe checkout session.

    Request:
        - plan_id or product_id
        - success_url / cancel_url: Optional overrides

    Response:
        - checkout_url: URL to redirect the member to
        - session_id: Stripe checkout session id
        - purchase_type: membership, credit_topup or product
    """
    logger.info(f"Checkout requested: user={current_user.id}, plan={req.plan_id}, product={req.product_id}")
    result = await CheckoutService(db, stripe_client).create_checkout(
        current_user,
        plan_id=req.plan_id,
        product_id=req.product_id,
        success_url=req.success_url,
        cancel_url=req.cancel_url,
    )
    return success_response(msg="Checkout initialized", data=CheckoutOut(**result).model_dump(mode="json"))


@router.post("/upgrade", response_model=ResponseModel)
async def create_upgrade_checkout(
    req: UpgradeCheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    """Checkout for a plan upgrade billed from the end of the current period."""
    logger.info(f"Upgrade checkout requested: user={current_user.id}, plan={req.plan_id}")
    result = await CheckoutService(db, stripe_client).create_upgrade_checkout(
        current_user,
        req.plan_id,
        success_url=req.success_url,
        cancel_url=req.cancel_url,
    )
    return success_response(msg="Upgrade checkout initialized", data=CheckoutOut(**result).model_dump(mode="json"))


@router.post("/from-credits", response_model=ResponseModel)
async def create_credits_conversion_checkout(
    req: UpgradeCheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    """Checkout that swaps an active credit membership for a new plan starting today."""
    logger.info(f"Credits conversion requested: user={current_user.id}, plan={req.plan_id}")
    result = await CheckoutService(db, stripe_client).create_credits_conversion_checkout(
        current_user,
        req.plan_id,
        success_url=req.success_url,
        cancel_url=req.cancel_url,
    )
    return success_response(msg="Conversion checkout initialized", data=CheckoutOut(**result).model_dump(mode="json"))
