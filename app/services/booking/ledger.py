"""Credit ledger - the only writer of a membership's persisted credit balance.

Every write is a compare-and-swap on ``Membership.version``: read balance and
version, compute the new balance, then ``UPDATE ... WHERE version = :seen``.
A zero rowcount means another worker got there first, so the read is redone,
up to ``settings.LEDGER_MAX_RETRIES`` attempts.

Applied operations are recorded as ``CreditLedgerEntry`` rows keyed by an
idempotency key; replaying a key returns the recorded entry.

The ledger flushes but never commits. The caller owns the transaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.util import identity_key
from sqlalchemy.orm.attributes import set_committed_value

from app.core.config import settings
from app.core.exceptions import (
    InsufficientCreditsError,
    LedgerConflictError,
    NotFoundError,
    ValidationError,
)
from app.core.logging_config import get_logger
from app.models.credit_ledger import CreditLedgerEntry
from app.models.membership import Membership
from app.models.plan import MembershipPlan
from app.services.booking.rules import CreditRules, parse_booking_rules
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import CreditAction

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    membership_id: uuid.UUID
    delta: int
    balance_before: int
    balance_after: int
    replayed: bool = False


class CreditLedger:
    """Debit/credit operations on credit-type memberships."""

    def __init__(self, db: AsyncSession, max_attempts: Optional[int] = None):
        self.db = db
        self.max_attempts = max_attempts or settings.LEDGER_MAX_RETRIES

    async def debit(
        self,
        membership_id: uuid.UUID,
        amount: int,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Take ``amount`` credits. Fails rather than going negative.

        Returns ``None`` for plans without a stored balance.
        """
        if amount <= 0:
            raise ValidationError("Debit amount must be positive")

        def _apply(balance: int) -> int:
            if balance < amount:
                raise InsufficientCreditsError(balance=balance, requested=amount)
            return balance - amount

        return await self._mutate(membership_id, _apply, idempotency_key, reason or "debit")

    async def credit(
        self,
        membership_id: uuid.UUID,
        amount: int,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> Optional[LedgerResult]:
        """Give back ``amount`` credits (refunds, top-ups)."""
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")
        return await self._mutate(
            membership_id, lambda balance: balance + amount, idempotency_key, reason or "credit"
        )

    async def adjust(
        self,
        membership_id: uuid.UUID,
        action: CreditAction,
        amount: int,
        idempotency_key: str,
    ) -> Optional[LedgerResult]:
        """Admin correction: add, subtract (clamped at 0) or set the balance."""
        if amount < 0:
            raise ValidationError("Amount must not be negative")

        if action == CreditAction.add:
            apply = lambda balance: balance + amount  # noqa: E731
        elif action == CreditAction.subtract:
            apply = lambda balance: max(0, balance - amount)  # noqa: E731
        elif action == CreditAction.set:
            apply = lambda balance: amount  # noqa: E731
        else:
            raise ValidationError(f"Unsupported credit action {action}")

        return await self._mutate(membership_id, apply, idempotency_key, f"admin_{action.value}")

    async def balance(self, membership_id: uuid.UUID) -> int:
        usage, _ = await self._read(membership_id)
        return int(usage.get("remaining_credits") or 0)

    async def _read(self, membership_id: uuid.UUID) -> tuple[dict[str, Any], int]:
        row = (
            await self.db.execute(
                select(Membership.usage_data, Membership.version).where(
                    Membership.id == membership_id
                )
            )
        ).first()
        if row is None:
            raise NotFoundError(f"Membership {membership_id} not found")
        return dict(row.usage_data or {}), row.version

    async def _compare_and_swap(
        self,
        membership_id: uuid.UUID,
        seen_version: int,
        usage_data: dict[str, Any],
    ) -> bool:
        result = await self.db.execute(
            update(Membership)
            .where(Membership.id == membership_id, Membership.version == seen_version)
            .values(
                usage_data=usage_data,
                version=seen_version + 1,
                updated_at=get_current_utc_datetime(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _sync_cached(self, membership_id: uuid.UUID, usage_data: dict[str, Any], version: int) -> None:
        # The UPDATE bypasses the identity map; keep a loaded Membership current
        cached = self.db.sync_session.identity_map.get(identity_key(Membership, membership_id))
        if cached is not None:
            set_committed_value(cached, "usage_data", usage_data)
            set_committed_value(cached, "version", version)

    async def _has_stored_balance(self, membership_id: uuid.UUID) -> bool:
        row = (
            await self.db.execute(
                select(MembershipPlan.booking_rules)
                .join(Membership, Membership.plan_id == MembershipPlan.id)
                .where(Membership.id == membership_id)
            )
        ).first()
        if row is None:
            raise NotFoundError(f"Membership {membership_id} not found")
        return isinstance(parse_booking_rules(row.booking_rules), CreditRules)

    async def _find_entry(self, idempotency_key: str) -> Optional[CreditLedgerEntry]:
        result = await self.db.execute(
            select(CreditLedgerEntry).where(CreditLedgerEntry.idempotency_key == idempotency_key)
        )
        return result.scalars().first()

    async def _mutate(self, membership_id, apply, idempotency_key: str, reason: str) -> Optional[LedgerResult]:
        existing = await self._find_entry(idempotency_key)
        if existing is not None:
            logger.info(f"Ledger key {idempotency_key} already applied; returning recorded result")
            return LedgerResult(
                membership_id=existing.membership_id,
                delta=existing.delta,
                balance_before=existing.balance_after - existing.delta,
                balance_after=existing.balance_after,
                replayed=True,
            )

        if not await self._has_stored_balance(membership_id):
            logger.debug(f"Membership {membership_id} has no stored balance; ledger write skipped")
            return None

        for attempt in range(1, self.max_attempts + 1):
            usage, version = await self._read(membership_id)
            before = int(usage.get("remaining_credits") or 0)
            after = apply(before)
            usage["remaining_credits"] = after
            usage["last_credit_update"] = get_current_utc_datetime().isoformat()

            if await self._compare_and_swap(membership_id, version, usage):
                self._sync_cached(membership_id, usage, version + 1)
                self.db.add(
                    CreditLedgerEntry(
                        membership_id=membership_id,
                        idempotency_key=idempotency_key,
                        delta=after - before,
                        balance_after=after,
                        reason=reason,
                    )
                )
                await self.db.flush()
                logger.info(
                    f"Ledger {reason} on membership {membership_id}: {before} -> {after} "
                    f"(key={idempotency_key}, attempt {attempt})"
                )
                return LedgerResult(
                    membership_id=membership_id,
                    delta=after - before,
                    balance_before=before,
                    balance_after=after,
                )

            logger.warning(
                f"Ledger version conflict on membership {membership_id} "
                f"(attempt {attempt}/{self.max_attempts})"
            )

        raise LedgerConflictError(membership_id, self.max_attempts)
