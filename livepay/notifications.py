"""
Buyer notifications for payment events.

Notifications are a convenience: every failure in here is logged and
swallowed so that it can never fail (and trigger a redelivery of) the payment
event that produced it.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.models import NOTIFICATION_ORDER_UPDATE, Notification, OrderRef
from livepay.sellers import find_seller

logger = logging.getLogger(__name__)

EVENT_PAYMENT_CONFIRMED = "payment_confirmed"
EVENT_REFUND_INITIATED = "refund_initiated"


def dedup_key(event: str, order_id: str) -> str:
    return f"{event}:{order_id}"


def payment_confirmed_body(seller_name: Optional[str]) -> str:
    if seller_name:
        return f"Your order from {seller_name} is confirmed and is being prepared."
    return "Your order is confirmed and is being prepared."


async def _insert_once(session: AsyncSession, user_id: str, key: str, **fields) -> bool:
    existing = (await session.execute(
        select(Notification.id).where(
            Notification.user_id == user_id,
            Notification.dedup_key == key,
        )
    )).first()
    if existing:
        return False
    session.add(Notification(user_id=user_id, dedup_key=key, **fields))
    return True


async def emit_payment_confirmed(session: AsyncSession, ref: OrderRef,
                                 batch_id: Optional[str]) -> bool:
    """Create the one "Payment Confirmed" notification for an order."""
    if not ref.buyer_id:
        return False

    try:
        async with session.begin():
            seller = await find_seller(session, ref.seller_entity_id, ref.seller_id)
            seller_name = seller.business_name if seller else None

            created = await _insert_once(
                session,
                ref.buyer_id,
                dedup_key(EVENT_PAYMENT_CONFIRMED, ref.id),
                title="Payment Confirmed",
                body=payment_confirmed_body(seller_name),
                type=NOTIFICATION_ORDER_UPDATE,
                meta={
                    "order_id": ref.id,
                    "seller_user_id": ref.seller_id,
                    "seller_entity_id": (seller.id if seller else None) or ref.seller_entity_id,
                    "seller_name": seller_name,
                    "batch_id": batch_id,
                    "event": EVENT_PAYMENT_CONFIRMED,
                },
            )
    except Exception:
        logger.warning("Failed to create payment notification",
                       extra={"order_id": ref.id}, exc_info=True)
        return False

    if created:
        logger.info("Payment notification sent", extra={
            "order_id": ref.id, "buyer_id": ref.buyer_id})
    else:
        logger.info("Notification already exists, skipping",
                    extra={"order_id": ref.id})
    return created


async def emit_refund_initiated(session: AsyncSession, ref: OrderRef) -> bool:
    if not ref.buyer_id:
        return False

    try:
        async with session.begin():
            created = await _insert_once(
                session,
                ref.buyer_id,
                dedup_key(EVENT_REFUND_INITIATED, ref.id),
                title="Refund initiated",
                body="Your refund is being processed and will appear shortly.",
                type=NOTIFICATION_ORDER_UPDATE,
                meta={
                    "order_id": ref.id,
                    "batch_id": ref.batch_id,
                    "seller_id": ref.seller_id,
                    "event": EVENT_REFUND_INITIATED,
                },
            )
    except Exception:
        logger.warning("Failed to create refund notification",
                       extra={"order_id": ref.id}, exc_info=True)
        return False
    return created
