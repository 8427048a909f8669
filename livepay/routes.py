import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.auth import verify_token
from livepay.database import get_session
from livepay.models import (
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_REFUNDED,
    Order,
    OrderRef,
    utcnow,
)
from livepay.notifications import emit_refund_initiated
from livepay.orders import get_intent, get_order, order_amount, refund_order
from livepay.sellers import find_seller
from livepay.stripe_service import (
    MINIMUM_CHARGE_CENTS,
    REUSABLE_INTENT_STATUSES,
    cancel_payment,
    create_payment,
    refund_payment,
    retrieve_payment,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentRequest(BaseModel):
    order_id: str
    currency: str = "usd"


def _owned_order(order: Optional[Order], user_id: str) -> Order:
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.buyer_id != user_id:
        raise HTTPException(status_code=403, detail="Unauthorized access to order")
    return order


@router.post("/payments")
async def create_payment_api(
    request: PaymentRequest,
    user_id: str = Depends(verify_token),
    db: AsyncSession = Depends(get_session),
):
    async with db.begin():
        order = _owned_order(await get_order(db, request.order_id), user_id)
        seller = await find_seller(db, order.seller_entity_id, order.seller_id)

    if order.status != ORDER_PENDING:
        raise HTTPException(
            status_code=400,
            detail=f"Order status is {order.status}, expected pending",
        )

    if order.payment_intent_id:
        existing = await run_in_threadpool(retrieve_payment, order.payment_intent_id)
        if existing.status in REUSABLE_INTENT_STATUSES:
            return {"client_secret": existing.client_secret, "payment_intent_id": existing.id}

    amount = int(order_amount(order) * 100)
    if amount < MINIMUM_CHARGE_CENTS:
        raise HTTPException(status_code=400, detail="Order amount too small (minimum $0.50)")

    metadata = {
        "order_id": order.id,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id or "",
        "seller_entity_id": order.seller_entity_id or "",
        "product_id": order.product_id or "",
        "show_id": order.show_id or "",
    }
    # a retry after an abandoned intent must not replay the old one
    idempotency_key = f"payment_order_{order.id}"
    if order.payment_intent_id:
        idempotency_key += f"_{order.payment_intent_id}"

    try:
        intent = await run_in_threadpool(
            create_payment,
            amount,
            request.currency,
            metadata,
            idempotency_key,
            seller.stripe_account_id if seller else None,
        )
    except stripe.StripeError as exc:
        logger.error("PaymentIntent creation failed",
                     extra={"order_id": order.id}, exc_info=True)
        raise HTTPException(status_code=502, detail=str(exc))

    try:
        async with db.begin():
            await db.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(payment_intent_id=intent.id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError:
        logger.error("Failed to store payment intent, cancelling it",
                     extra={"order_id": order.id, "payment_intent_id": intent.id},
                     exc_info=True)
        await run_in_threadpool(cancel_payment, intent.id)
        raise HTTPException(status_code=500, detail="Failed to update order with payment intent")

    logger.info("PaymentIntent created", extra={
        "order_id": order.id, "payment_intent_id": intent.id, "amount": amount})
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}


@router.post("/refund")
async def refund(
    order_id: str,
    reason: Optional[str] = None,
    user_id: str = Depends(verify_token),
    db: AsyncSession = Depends(get_session),
):
    async with db.begin():
        order = await get_order(db, order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        seller = await find_seller(db, order.seller_entity_id, order.seller_id)

    if user_id not in (order.seller_id, seller.user_id if seller else None):
        raise HTTPException(status_code=403, detail="Forbidden")

    if order.stripe_refund_id:
        return {"stripe_refund_id": order.stripe_refund_id, "idempotent": True}

    if order.status != ORDER_PAID:
        raise HTTPException(status_code=400, detail="Order not refundable")
    if not order.payment_intent_id:
        raise HTTPException(status_code=400, detail="Missing payment intent")
    if not (seller and seller.stripe_account_id):
        raise HTTPException(status_code=400, detail="Seller Stripe account not connected")

    try:
        stripe_refund = await run_in_threadpool(
            refund_payment,
            order.payment_intent_id,
            order.id,
            seller.stripe_account_id,
            reason,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe refund failed", extra={"order_id": order.id}, exc_info=True)
        raise HTTPException(status_code=502, detail=str(exc))

    batch_completed = await refund_order(db, order.id, stripe_refund.id)

    # a concurrent request may have recorded the refund (or moved the order) first
    async with db.begin():
        current = await get_order(db, order.id)
    if current.status == ORDER_REFUNDED:
        await emit_refund_initiated(db, OrderRef.from_row(current))
        logger.info("Order refunded", extra={
            "order_id": order.id, "stripe_refund_id": current.stripe_refund_id})
    else:
        logger.warning("Refund issued but order not moved to refunded", extra={
            "order_id": order.id, "stripe_refund_id": stripe_refund.id,
            "status": current.status})

    return {
        "stripe_refund_id": current.stripe_refund_id or stripe_refund.id,
        "status": stripe_refund.status,
        "order_status": current.status,
        "batch_completed": batch_completed,
    }


@router.get("/orders/{order_id}")
async def get_order_status(
    order_id: str,
    user_id: str = Depends(verify_token),
    db: AsyncSession = Depends(get_session),
):
    async with db.begin():
        order = _owned_order(await get_order(db, order_id), user_id)

    return {
        "order_id": order.id,
        "status": order.status,
        "batch_id": order.batch_id,
        "completion_code": order.completion_code,
        "payment_intent_id": order.payment_intent_id,
    }


@router.get("/checkout-intents/{intent_id}")
async def get_checkout_intent_status(
    intent_id: str,
    user_id: str = Depends(verify_token),
    db: AsyncSession = Depends(get_session),
):
    async with db.begin():
        intent = await get_intent(db, intent_id)
        if intent is None:
            raise HTTPException(status_code=404, detail="Checkout intent not found")
        if intent.buyer_id != user_id:
            raise HTTPException(status_code=403, detail="Unauthorized access to checkout intent")
        order = await get_order(db, intent.converted_order_id) if intent.converted_order_id else None

    return {
        "checkout_intent_id": intent.id,
        "intent_status": intent.intent_status,
        "converted_order_id": intent.converted_order_id,
        "order_status": order.status if order else None,
    }
