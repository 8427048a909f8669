import hashlib
import hmac
import json
import os
import time
import uuid
from decimal import Decimal

# must be in place before livepay.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_livepay.db")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["JWT_SECRET"] = "jwt_test_secret"

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import select

from livepay.database import create_schema, get_session, make_async_engine
from livepay.main import app as fastapi_app
from livepay.models import (
    Batch,
    CheckoutIntent,
    Notification,
    Order,
    Product,
    Seller,
    Show,
)

WEBHOOK_SECRET = "whsec_test"

BUYER = "buyer-0001-aaaa"
SELLER_USER = "seller-user-0001"
SELLER = "seller-ent-0001"
SHOW = "show-0001-bbbbbbbb"
ACCOUNT = "acct_1"


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = make_async_engine(f"sqlite:///{tmp_path / 'livepay.db'}")
    await create_schema(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    async def _test_session():
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[get_session] = _test_session
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    t = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode(), f"{t}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={t},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = None, account: str = None) -> dict:
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }
    if account:
        event["account"] = account
    return event


def payment_intent(metadata: dict, pi_id: str = "pi_123", **extra) -> dict:
    return {"id": pi_id, "object": "payment_intent", "metadata": metadata, **extra}


def bearer(user_id: str) -> dict:
    token = jwt.encode({"sub": user_id}, os.environ["JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


async def post_event(client, event: dict):
    payload = json.dumps(event)
    return await client.post(
        "/webhook",
        content=payload,
        headers={"stripe-signature": sign(payload), "content-type": "application/json"},
    )


async def seed(session_factory, *rows):
    async with session_factory() as session:
        async with session.begin():
            session.add_all(rows)


async def fetch(session_factory, model, row_id):
    async with session_factory() as session:
        return await session.get(model, row_id)


async def fetch_all(session_factory, stmt):
    async with session_factory() as session:
        return (await session.execute(stmt)).scalars().all()


async def batches_for(session_factory, buyer_id=BUYER):
    return await fetch_all(session_factory, select(Batch).where(Batch.buyer_id == buyer_id))


async def notifications_for(session_factory, user_id=BUYER):
    return await fetch_all(
        session_factory, select(Notification).where(Notification.user_id == user_id)
    )


def make_seller(**kw):
    fields = dict(
        id=SELLER,
        user_id=SELLER_USER,
        business_name="Vintage Vinyl",
        stripe_account_id=ACCOUNT,
        stripe_connected=False,
    )
    fields.update(kw)
    return Seller(**fields)


def make_order(order_id="order-1", **kw):
    fields = dict(
        id=order_id,
        buyer_id=BUYER,
        seller_id=SELLER_USER,
        seller_entity_id=SELLER,
        product_id="product-1",
        show_id=SHOW,
        quantity=1,
        price=Decimal("20.00"),
        delivery_fee=Decimal("5.00"),
        status="pending",
    )
    fields.update(kw)
    return Order(**fields)


def make_show(**kw):
    fields = dict(id=SHOW, seller_id=SELLER, title="Friday crate digging", sales_count=0)
    fields.update(kw)
    return Show(**fields)


def make_product(**kw):
    fields = dict(
        id="product-1",
        seller_id=SELLER,
        title="Blue Note first pressing",
        price=Decimal("12.50"),
        delivery_fee=Decimal("4.00"),
    )
    fields.update(kw)
    return Product(**fields)


def make_intent(intent_id="intent-1", **kw):
    fields = dict(
        id=intent_id,
        buyer_id=BUYER,
        seller_id=SELLER,
        show_id=SHOW,
        product_id="product-1",
        quantity=2,
        intent_status="locked",
    )
    fields.update(kw)
    return CheckoutIntent(**fields)
