"""
Pickup batches: find-or-create the open batch for a (buyer, seller, show) key,
attach paid orders to it and keep its totals in line with its orders.

Totals are always recomputed from the attached order rows, never patched
incrementally, so a partially failed earlier attempt is repaired by the next
successful one.
"""
import logging
import secrets
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from livepay.errors import BatchAttachError, BatchRecomputeError
from livepay.models import (
    BATCH_ACTIVE,
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    BATCH_PENDING,
    BATCH_PICKED_UP,
    OPEN_BATCH_STATUSES,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_FULFILLED,
    ORDER_PAID,
    ORDER_PICKED_UP,
    ORDER_READY,
    ORDER_REFUNDED,
    Batch,
    Order,
    OrderRef,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

TWOPLACES = Decimal("0.01")

# order statuses that count toward a batch's totals (paid or later)
COUNTED_ORDER_STATUSES = (
    ORDER_PAID, ORDER_READY, ORDER_FULFILLED, ORDER_PICKED_UP, ORDER_COMPLETED
)

# batch statuses a refund may not move out of
FINAL_BATCH_STATUSES = (BATCH_PICKED_UP, BATCH_COMPLETED, BATCH_CANCELLED)


def money(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Invalid money value encountered", extra={"value": value})
        return Decimal("0.00")


def generate_completion_code() -> str:
    # uniform over the 9-digit range 100000000..999999999
    return str(100_000_000 + secrets.randbelow(900_000_000))


def make_batch_number(show_id: str, buyer_id: str, on: Optional[date] = None) -> str:
    on = on or utcnow().date()
    return f"BATCH-{show_id[:8]}-{buyer_id[:8]}-{on:%Y%m%d}"


def _dialect_insert(session: AsyncSession):
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def find_open_batch(session: AsyncSession, buyer_id, seller_key, show_id) -> Optional[Batch]:
    result = await session.execute(
        select(Batch)
        .where(
            Batch.buyer_id == buyer_id,
            Batch.seller_id == seller_key,
            Batch.show_id == show_id,
            Batch.status.in_(OPEN_BATCH_STATUSES),
        )
        .order_by(Batch.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_open_batch(session: AsyncSession, ref: OrderRef) -> Optional[str]:
    """
    Insert a fresh `active` batch for the order's key.

    Returns the new batch id, or None when a concurrent writer already holds
    the open batch for this key (the partial unique index rejected ours).
    """
    insert = _dialect_insert(session)
    stmt = (
        insert(Batch)
        .values(
            id=new_id(),
            batch_number=make_batch_number(ref.show_id, ref.buyer_id),
            buyer_id=ref.buyer_id,
            seller_id=ref.seller_key,
            show_id=ref.show_id,
            completion_code=generate_completion_code(),
            status=BATCH_ACTIVE,
            total_items=0,
            total_amount=Decimal("0.00"),
        )
        .on_conflict_do_nothing()
        .returning(Batch.id)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _promote(session: AsyncSession, batch_id: str) -> None:
    # only from active, so a concurrent promotion or fulfillment step wins
    await session.execute(
        update(Batch)
        .where(Batch.id == batch_id, Batch.status == BATCH_ACTIVE)
        .values(status=BATCH_PENDING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def attach_to_batch(session: AsyncSession, ref: OrderRef) -> Optional[str]:
    """
    Attach a just-paid order to the open batch for its key, creating the
    batch if needed. Returns the batch id, or None when the order lacks a
    buyer, seller or show and therefore cannot be batched.

    Raises BatchAttachError on any store failure.
    """
    log_ctx = {"order_id": ref.id, "buyer_id": ref.buyer_id,
               "seller_key": ref.seller_key, "show_id": ref.show_id}

    try:
        if ref.batch_id:
            await _promote(session, ref.batch_id)
            return ref.batch_id

        if not (ref.buyer_id and ref.seller_key and ref.show_id):
            logger.warning("Order is missing its batch key, not batching", extra=log_ctx)
            return None

        batch = await find_open_batch(session, ref.buyer_id, ref.seller_key, ref.show_id)
        if batch is None:
            batch_id = await create_open_batch(session, ref)
            if batch_id is None:
                logger.info("Lost open-batch insert race, reusing winner", extra=log_ctx)
                batch = await find_open_batch(
                    session, ref.buyer_id, ref.seller_key, ref.show_id
                )
            else:
                batch = await session.get(Batch, batch_id)
                logger.info("Created batch", extra={**log_ctx, "batch_id": batch_id})

        if batch is None:
            raise BatchAttachError("No open batch available after insert", **log_ctx)

        attached = await session.execute(
            update(Order)
            .where(Order.id == ref.id, Order.batch_id.is_(None))
            .values(
                batch_id=batch.id,
                completion_code=batch.completion_code,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if attached.rowcount != 1:
            raise BatchAttachError(
                f"Order {ref.id} could not be attached to batch {batch.id}",
                **log_ctx,
            )

        await _promote(session, batch.id)
    except SQLAlchemyError as exc:
        logger.error("Batch attach failed", extra=log_ctx, exc_info=True)
        raise BatchAttachError(f"Batch attach failed for order {ref.id}", **log_ctx) from exc

    logger.info("Order attached to batch", extra={**log_ctx, "batch_id": batch.id})
    return batch.id


async def recompute_batch_totals(session: AsyncSession, batch_id: str) -> Tuple[int, Decimal]:
    """
    Overwrite the batch totals with sums over its counted orders.

    Raises BatchRecomputeError if the batch is missing or the store fails.
    """
    try:
        rows = (await session.execute(
            select(Order.quantity, Order.price, Order.delivery_fee)
            .where(
                Order.batch_id == batch_id,
                Order.status.in_(COUNTED_ORDER_STATUSES),
            )
        )).all()

        total_items = sum(int(quantity or 0) for quantity, _, _ in rows)
        total_amount = sum(
            (money(price) + money(fee) for _, price, fee in rows),
            Decimal("0.00"),
        )

        result = await session.execute(
            update(Batch)
            .where(Batch.id == batch_id)
            .values(
                total_items=total_items,
                total_amount=total_amount,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as exc:
        logger.error("Batch totals recompute failed",
                     extra={"batch_id": batch_id}, exc_info=True)
        raise BatchRecomputeError(
            f"Recompute failed for batch {batch_id}", batch_id=batch_id
        ) from exc

    if result.rowcount != 1:
        raise BatchRecomputeError(f"Batch {batch_id} not found", batch_id=batch_id)

    logger.info("Batch totals recomputed", extra={
        "batch_id": batch_id, "total_items": total_items,
        "total_amount": str(total_amount),
    })
    return total_items, total_amount


async def complete_batch_if_emptied(session: AsyncSession, batch_id: str) -> bool:
    """
    Close a batch whose orders have all been refunded or cancelled, since
    nothing remains to pick up. Closed batches are left as they are.
    """
    statuses = (await session.execute(
        select(Order.status).where(Order.batch_id == batch_id)
    )).scalars().all()

    if not statuses or any(s not in (ORDER_REFUNDED, ORDER_CANCELLED) for s in statuses):
        return False

    result = await session.execute(
        update(Batch)
        .where(Batch.id == batch_id, Batch.status.not_in(FINAL_BATCH_STATUSES))
        .values(status=BATCH_COMPLETED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
