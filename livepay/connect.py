"""
Keeps `sellers.stripe_connected` in sync with Stripe Connect lifecycle events.

Connection model: a seller is connected while the Stripe account relationship
exists and has not been deauthorized. `account.updated` and
`capability.updated` can only confirm a connection; the only event that
revokes it is `account.application.deauthorized`, and that revocation is
final (later account updates do not bring it back; reconnecting goes through
onboarding, which clears `stripe_deauthorized_at`).

The flag is a denormalized convenience, not something money movement depends
on, so failures are logged and swallowed.
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.models import Seller, utcnow
from livepay.verifier import StripeEvent

logger = logging.getLogger(__name__)

ACCOUNT_UPDATED = "account.updated"
CAPABILITY_UPDATED = "capability.updated"
ACCOUNT_DEAUTHORIZED = "account.application.deauthorized"

# no-op results
NOT_FOUND = "not_found"
UNCHANGED = "unchanged"
DEAUTHORIZED_FINAL = "deauthorized_final"
# write results
CONNECTED = "connected"
DISCONNECTED = "disconnected"


def account_id_for(event: StripeEvent) -> Optional[str]:
    obj = event.object
    if event.type == ACCOUNT_UPDATED:
        return obj.get("id") or event.account
    # capability and application objects reference the account they belong to
    return obj.get("account") or event.account


async def _apply(session: AsyncSession, account_id: str, revoke: bool) -> str:
    seller = (await session.execute(
        select(Seller).where(Seller.stripe_account_id == account_id)
    )).scalar_one_or_none()

    if seller is None:
        logger.warning("No seller for stripe account", extra={"stripe_account_id": account_id})
        return NOT_FOUND

    if revoke:
        if (not seller.stripe_connected and seller.stripe_connected_at is None
                and seller.stripe_deauthorized_at is not None):
            return UNCHANGED
        await session.execute(
            update(Seller)
            .where(Seller.id == seller.id)
            .values(
                stripe_connected=False,
                stripe_connected_at=None,
                stripe_deauthorized_at=seller.stripe_deauthorized_at or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return DISCONNECTED

    if seller.stripe_deauthorized_at is not None:
        return DEAUTHORIZED_FINAL

    if seller.stripe_connected and seller.stripe_connected_at is not None:
        return UNCHANGED

    await session.execute(
        update(Seller)
        .where(Seller.id == seller.id, Seller.stripe_deauthorized_at.is_(None))
        .values(stripe_connected=True, stripe_connected_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return CONNECTED


async def sync_connect_account(session: AsyncSession, event: StripeEvent) -> Optional[str]:
    account_id = account_id_for(event)
    if not account_id:
        logger.warning("Connect event without account id",
                       extra={"event_id": event.id, "event_type": event.type})
        return None

    try:
        async with session.begin():
            outcome = await _apply(session, account_id,
                                   revoke=event.type == ACCOUNT_DEAUTHORIZED)
    except Exception:
        logger.error("Connect status sync failed", extra={
            "event_id": event.id, "stripe_account_id": account_id}, exc_info=True)
        return None

    logger.info("Connect status sync", extra={
        "event_id": event.id, "event_type": event.type,
        "stripe_account_id": account_id, "outcome": outcome,
    })
    return outcome
