"""
Order state machine driven by Stripe payment-intent events.

Marking an order paid is a claim-then-act protocol:

  1. resolve the order (directly, or by converting its checkout intent)
  2. stop if the order is already terminal (redelivery)
  3. claim the event id on the order row (first writer wins)
  4. pending -> paid
  5. attach to the open pickup batch and recompute the batch totals

Steps 1-5 share one transaction: a failure anywhere rolls the claim back too,
so the provider's redelivery can claim again and finish the job.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.batches import (
    attach_to_batch,
    complete_batch_if_emptied,
    money,
    recompute_batch_totals,
)
from livepay.errors import ClaimError, DuplicateEventClaim
from livepay.models import (
    INTENT_CANCELLED,
    INTENT_CONVERTED,
    INTENT_LOCKED,
    INTENT_OPEN,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_FULFILLED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_PICKED_UP,
    ORDER_READY,
    ORDER_REFUNDED,
    CheckoutIntent,
    Order,
    OrderRef,
    Product,
    Seller,
    Show,
    new_id,
    utcnow,
)
from livepay.notifications import emit_payment_confirmed
from livepay.verifier import StripeEvent

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PAID, ORDER_CANCELLED},
    ORDER_PAID: {ORDER_READY, ORDER_FULFILLED, ORDER_REFUNDED, ORDER_COMPLETED},
    ORDER_READY: {ORDER_PICKED_UP, ORDER_REFUNDED},
    ORDER_FULFILLED: {ORDER_COMPLETED},
    ORDER_PICKED_UP: {ORDER_COMPLETED},
    ORDER_COMPLETED: set(),
    ORDER_CANCELLED: set(),
    ORDER_REFUNDED: set(),
}

# Everything past pending is out of reach of payment events.
TERMINAL_ORDER_STATUSES = tuple(s for s in ALLOWED_TRANSITIONS if s != ORDER_PENDING)

OPEN_INTENT_STATUSES = (INTENT_OPEN, INTENT_LOCKED)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def sources_of(target: str) -> tuple:
    """Statuses an order may move to `target` from, for guarded updates."""
    return tuple(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


CANCELLABLE_STATUSES = sources_of(ORDER_CANCELLED)
REFUNDABLE_STATUSES = sources_of(ORDER_REFUNDED)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_ORDER_STATUSES


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
    return (await session.execute(
        select(Order).where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def get_intent(session: AsyncSession, intent_id: str) -> Optional[CheckoutIntent]:
    return (await session.execute(
        select(CheckoutIntent).where(CheckoutIntent.id == intent_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def _convert_intent(session: AsyncSession, intent: CheckoutIntent,
                          payment_intent_id: Optional[str]) -> Optional[Order]:
    product = (await session.execute(
        select(Product).where(Product.id == intent.product_id)
    )).scalar_one_or_none()
    if product is None:
        logger.warning("Product for checkout intent not found", extra={
            "checkout_intent_id": intent.id, "product_id": intent.product_id})
        return None

    legacy_seller_id = (await session.execute(
        select(Seller.user_id).where(Seller.id == intent.seller_id)
    )).scalar_one_or_none()

    quantity = intent.quantity or 1
    order = Order(
        id=new_id(),
        buyer_id=intent.buyer_id,
        seller_id=legacy_seller_id,
        seller_entity_id=intent.seller_id,
        product_id=intent.product_id,
        show_id=intent.show_id,
        checkout_intent_id=intent.id,
        quantity=quantity,
        price=money(product.price) * quantity,
        delivery_fee=money(product.delivery_fee),
        status=ORDER_PENDING,
        payment_intent_id=payment_intent_id,
    )
    session.add(order)
    await session.flush()

    converted = await session.execute(
        update(CheckoutIntent)
        .where(
            CheckoutIntent.id == intent.id,
            CheckoutIntent.intent_status.in_(OPEN_INTENT_STATUSES),
        )
        .values(
            intent_status=INTENT_CONVERTED,
            converted_order_id=order.id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if converted.rowcount != 1:
        # a concurrent delivery converted it first; drop our order with the tx
        raise DuplicateEventClaim(payment_intent_id, order.id)

    logger.info("Checkout intent converted to order", extra={
        "checkout_intent_id": intent.id, "order_id": order.id})
    return order


async def resolve_order(session: AsyncSession, payment_intent: Dict[str, Any]) -> Optional[Order]:
    """
    Find the order a payment intent pays for.

    Orders created up front are named by `metadata.order_id`. Intent-flow
    checkouts only carry `metadata.checkout_intent_id`; the order is created
    here the first time a payment for that intent succeeds.
    """
    metadata = payment_intent.get("metadata") or {}
    order_id = metadata.get("order_id")
    intent_id = metadata.get("checkout_intent_id")

    if order_id:
        order = await get_order(session, order_id)
        if order is None:
            logger.warning("Order not found, skipping", extra={"order_id": order_id})
        return order

    if not intent_id:
        logger.error("No order_id or checkout_intent_id in PaymentIntent metadata",
                     extra={"payment_intent_id": payment_intent.get("id")})
        return None

    intent = await get_intent(session, intent_id)
    if intent is None:
        logger.warning("Checkout intent not found", extra={"checkout_intent_id": intent_id})
        return None

    if intent.intent_status == INTENT_CONVERTED:
        return await get_order(session, intent.converted_order_id)

    if intent.intent_status == INTENT_CANCELLED:
        logger.error("Payment succeeded for a cancelled checkout intent", extra={
            "checkout_intent_id": intent_id,
            "payment_intent_id": payment_intent.get("id")})
        return None

    return await _convert_intent(session, intent, payment_intent.get("id"))


async def claim_event(session: AsyncSession, order_id: str, event_id: str) -> None:
    """
    Write `event_id` onto the order as the idempotency witness.

    Raises DuplicateEventClaim when the event is already claimed (unique
    violation, or the guarded update matched no row) and ClaimError for any
    other store failure.
    """
    try:
        result = await session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.not_in(TERMINAL_ORDER_STATUSES),
                or_(Order.last_stripe_event_id.is_(None),
                    Order.last_stripe_event_id != event_id),
            )
            .values(last_stripe_event_id=event_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as exc:
        raise DuplicateEventClaim(event_id, order_id) from exc
    except SQLAlchemyError as exc:
        raise ClaimError(f"Failed idempotency claim for order {order_id}",
                         order_id=order_id, event_id=event_id) from exc

    if result.rowcount != 1:
        raise DuplicateEventClaim(event_id, order_id)


async def mark_paid(session: AsyncSession, order_id: str, event_id: str,
                    payment_intent_id: Optional[str]) -> None:
    try:
        result = await session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == ORDER_PENDING,
                Order.last_stripe_event_id == event_id,
            )
            .values(
                status=ORDER_PAID,
                payment_intent_id=payment_intent_id,
                paid_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as exc:
        raise ClaimError(f"Failed to mark order {order_id} paid",
                         order_id=order_id, event_id=event_id) from exc

    if result.rowcount != 1:
        raise ClaimError(f"Order {order_id} left pending after claim",
                         order_id=order_id, event_id=event_id)


async def increment_show_sales(session: AsyncSession, show_id: Optional[str]) -> None:
    if not show_id:
        return
    try:
        async with session.begin():
            await session.execute(
                update(Show)
                .where(Show.id == show_id)
                .values(sales_count=func.coalesce(Show.sales_count, 0) + 1)
                .execution_options(synchronize_session=False)
            )
    except Exception:
        logger.warning("Failed to increment show sales count",
                       extra={"show_id": show_id}, exc_info=True)


async def handle_payment_succeeded(session: AsyncSession, event: StripeEvent) -> Optional[OrderRef]:
    payment_intent = event.object
    log_ctx = {"event_id": event.id, "payment_intent_id": payment_intent.get("id")}

    try:
        async with session.begin():
            order = await resolve_order(session, payment_intent)
            if order is None:
                return None

            ref = OrderRef.from_row(order)
            log_ctx["order_id"] = ref.id
            if is_terminal(ref.status):
                logger.info("Order already terminal, skipping",
                            extra={**log_ctx, "status": ref.status})
                return None

            await claim_event(session, ref.id, event.id)
            await mark_paid(session, ref.id, event.id, payment_intent.get("id"))

            batch_id = await attach_to_batch(session, ref)
            if batch_id is not None:
                await recompute_batch_totals(session, batch_id)
    except DuplicateEventClaim:
        logger.info("Duplicate Stripe event ignored", extra=log_ctx)
        return None

    logger.info("Order marked as paid", extra={**log_ctx, "batch_id": batch_id})

    await increment_show_sales(session, ref.show_id)
    await emit_payment_confirmed(session, ref, batch_id)
    return ref


async def handle_payment_failed(session: AsyncSession, event: StripeEvent) -> None:
    """Failed attempts leave the order pending so the buyer can retry."""
    payment_intent = event.object
    metadata = payment_intent.get("metadata") or {}
    reason = (payment_intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    order_id = metadata.get("order_id")

    async with session.begin():
        if not order_id and metadata.get("checkout_intent_id"):
            intent = await get_intent(session, metadata["checkout_intent_id"])
            order_id = intent.converted_order_id if intent else None
            if not order_id:
                logger.info("Payment failed for checkout intent", extra={
                    "checkout_intent_id": metadata["checkout_intent_id"],
                    "reason": reason})
                return

        order = await get_order(session, order_id) if order_id else None

    if order is None:
        logger.warning("Order not found for failed payment", extra={"order_id": order_id})
        return
    if order.status != ORDER_PENDING:
        logger.info("Order not pending, ignoring payment failure",
                    extra={"order_id": order.id, "status": order.status})
        return
    logger.info("Payment failed, order left pending for retry",
                extra={"order_id": order.id, "reason": reason})


async def _cancel_intent(session: AsyncSession, intent_id: str) -> bool:
    # converted intents are never cancelled: the order they produced is authoritative
    result = await session.execute(
        update(CheckoutIntent)
        .where(
            CheckoutIntent.id == intent_id,
            CheckoutIntent.intent_status.in_(OPEN_INTENT_STATUSES),
        )
        .values(intent_status=INTENT_CANCELLED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def handle_payment_canceled(session: AsyncSession, event: StripeEvent) -> None:
    metadata = event.metadata
    order_id = metadata.get("order_id")
    intent_id = metadata.get("checkout_intent_id")

    async with session.begin():
        if not order_id and intent_id:
            intent = await get_intent(session, intent_id)
            if intent is None:
                logger.warning("Checkout intent not found for cancellation",
                               extra={"checkout_intent_id": intent_id})
                return
            order_id = intent.converted_order_id

        order = await get_order(session, order_id) if order_id else None
        if order_id and order is None:
            logger.warning("Order not found for cancellation", extra={"order_id": order_id})

        if order is not None:
            intent_id = intent_id or order.checkout_intent_id
            if not can_transition(order.status, ORDER_CANCELLED):
                logger.info("Order terminal, not cancelling",
                            extra={"order_id": order.id, "status": order.status})
            else:
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status.in_(CANCELLABLE_STATUSES))
                    .values(status=ORDER_CANCELLED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                logger.info("Order cancelled", extra={"order_id": order.id})

        if intent_id:
            if await _cancel_intent(session, intent_id):
                logger.info("Checkout intent cancelled", extra={"checkout_intent_id": intent_id})
            else:
                logger.info("Checkout intent not open, left as is",
                            extra={"checkout_intent_id": intent_id})


async def refund_order(session: AsyncSession, order_id: str, stripe_refund_id: str) -> bool:
    """
    Record a completed Stripe refund: paid|ready -> refunded, then bring the
    batch back in line. Returns True if the batch was closed as a result.
    """
    async with session.begin():
        order = await get_order(session, order_id)
        result = await session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.stripe_refund_id.is_(None),
                Order.status.in_(REFUNDABLE_STATUSES),
            )
            .values(
                status=ORDER_REFUNDED,
                stripe_refund_id=stripe_refund_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1 or order is None or not order.batch_id:
            return False

        await recompute_batch_totals(session, order.batch_id)
        closed = await complete_batch_if_emptied(session, order.batch_id)

    if closed:
        logger.info("Batch completed, all orders refunded or cancelled",
                    extra={"batch_id": order.batch_id})
    return closed


def order_amount(order: Order) -> Decimal:
    return money(order.price) + money(order.delivery_fee)
