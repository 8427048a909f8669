import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from livepay.database import Base

# Order statuses
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_READY = "ready"
ORDER_FULFILLED = "fulfilled"
ORDER_PICKED_UP = "picked_up"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

# Batch statuses
BATCH_ACTIVE = "active"
BATCH_PENDING = "pending"
BATCH_READY = "ready"
BATCH_PICKED_UP = "picked_up"
BATCH_COMPLETED = "completed"
BATCH_CANCELLED = "cancelled"

OPEN_BATCH_STATUSES = (BATCH_ACTIVE, BATCH_PENDING)

# Checkout intent statuses
INTENT_OPEN = "intent"
INTENT_LOCKED = "locked"
INTENT_CONVERTED = "converted"
INTENT_CANCELLED = "cancelled"

NOTIFICATION_ORDER_UPDATE = "order_update"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(String, primary_key=True, default=new_id)  # canonical
    user_id = Column(String, unique=True, index=True)       # legacy auth id
    business_name = Column(String)
    stripe_account_id = Column(String, unique=True, index=True)
    stripe_connected = Column(Boolean, nullable=False, default=False)
    stripe_connected_at = Column(DateTime(timezone=True))
    stripe_deauthorized_at = Column(DateTime(timezone=True))


class Show(Base):
    __tablename__ = "shows"

    id = Column(String, primary_key=True, default=new_id)
    seller_id = Column(String, index=True)
    title = Column(String)
    sales_count = Column(Integer, nullable=False, default=0)


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=new_id)
    seller_id = Column(String, index=True)
    title = Column(String)
    price = Column(Numeric(12, 2), nullable=False)
    delivery_fee = Column(Numeric(12, 2), nullable=False, default=0)


class CheckoutIntent(Base):
    __tablename__ = "checkout_intents"

    id = Column(String, primary_key=True, default=new_id)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False)  # sellers.id
    show_id = Column(String)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    # intent -> locked -> converted | cancelled
    intent_status = Column(String, nullable=False, default=INTENT_OPEN)
    intent_expires_at = Column(DateTime(timezone=True))
    converted_order_id = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Batch(Base):
    __tablename__ = "batches"
    __table_args__ = (
        # at most one open batch per (buyer, seller, show)
        Index(
            "ux_batches_open_key",
            "buyer_id", "seller_id", "show_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'pending')"),
            sqlite_where=text("status IN ('active', 'pending')"),
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    batch_number = Column(String, nullable=False)
    buyer_id = Column(String, nullable=False)
    seller_id = Column(String, nullable=False)  # resolved seller key
    show_id = Column(String, nullable=False)
    completion_code = Column(String, nullable=False)
    # active | pending | ready | picked_up | completed | cancelled
    status = Column(String, nullable=False, default=BATCH_ACTIVE)
    total_items = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    buyer_id = Column(String, index=True)
    seller_id = Column(String)         # legacy: sellers.user_id
    seller_entity_id = Column(String)  # canonical: sellers.id
    product_id = Column(String)
    show_id = Column(String, index=True)
    checkout_intent_id = Column(String, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(12, 2), nullable=False, default=0)

    # pending | paid | ready | fulfilled | picked_up | completed
    # | cancelled | refunded
    status = Column(String, nullable=False, default=ORDER_PENDING)
    payment_intent_id = Column(String, index=True)
    last_stripe_event_id = Column(String, unique=True)
    batch_id = Column(String, ForeignKey("batches.id"), index=True)
    completion_code = Column(String)
    stripe_refund_id = Column(String)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    paid_at = Column(DateTime(timezone=True))


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    body = Column(String, nullable=False)
    type = Column(String, nullable=False, default=NOTIFICATION_ORDER_UPDATE)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    dedup_key = Column(String, unique=True)
    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


@dataclass(frozen=True)
class OrderRef:
    """
    Snapshot of the order fields the pipeline carries between steps.

    `seller_key` is resolved once here (canonical seller entity id, falling
    back to the legacy seller user id) and used as an opaque batch key from
    then on.
    """
    id: str
    buyer_id: Optional[str]
    seller_id: Optional[str]
    seller_entity_id: Optional[str]
    seller_key: Optional[str]
    show_id: Optional[str]
    status: str
    batch_id: Optional[str]

    @classmethod
    def from_row(cls, order: Order) -> "OrderRef":
        return cls(
            id=order.id,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            seller_entity_id=order.seller_entity_id,
            seller_key=order.seller_entity_id or order.seller_id,
            show_id=order.show_id,
            status=order.status,
            batch_id=order.batch_id,
        )
