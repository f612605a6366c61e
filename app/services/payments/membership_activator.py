import asyncio
from datetime import date
from typing import Optional

from app.core.logging_config import get_logger
from app.db.deps import AsyncSessionLocal
from app.services.payments.upgrade_scheduler import UpgradeScheduler


logger = get_logger("membership_activator")


async def activate_due_memberships_once(today: Optional[date] = None) -> int:
    """Activate pending upgrades whose start date has arrived.

    Returns number of memberships activated.
    """
    async with AsyncSessionLocal() as db:
        activated = await UpgradeScheduler(db).activate_due_memberships(today)
        await db.commit()
        if activated:
            logger.info(f"Membership activator: activated {len(activated)} pending membership(s)")
        return len(activated)


async def run_membership_activator_task(poll_seconds: int = 3600):
    """Background loop: periodically activate due pending memberships."""
    logger.info(f"Starting membership activator task (interval={poll_seconds}s)")
    try:
        while True:
            try:
                await activate_due_memberships_once()
            except Exception as e:
                logger.exception(f"Membership activator error: {e}")
            await asyncio.sleep(poll_seconds)
    except asyncio.CancelledError:
        logger.info("Membership activator task cancelled; shutting down")
        raise
