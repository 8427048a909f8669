import asyncio
import json
from decimal import Decimal

from sqlalchemy import select

from conftest import (
    ACCOUNT,
    BUYER,
    SELLER,
    batches_for,
    fetch,
    fetch_all,
    make_event,
    make_intent,
    make_order,
    make_product,
    make_seller,
    make_show,
    notifications_for,
    payment_intent,
    post_event,
    seed,
    sign,
)
from livepay.models import Batch, CheckoutIntent, Order, Seller


async def test_scenario_a_first_payment_creates_batch(client, session_factory):
    await seed(session_factory, make_seller(), make_show(), make_order("O1"))

    response = await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "O1"}), event_id="E1"))

    assert response.status_code == 200
    assert response.json() == {"received": True, "event_id": "E1"}

    o1 = await fetch(session_factory, Order, "O1")
    assert o1.status == "paid"
    [b1] = await batches_for(session_factory)
    assert b1.status == "pending"
    assert o1.batch_id == b1.id
    assert b1.total_amount == o1.price + o1.delivery_fee
    assert len(await notifications_for(session_factory, o1.buyer_id)) == 1


async def test_scenario_b_redelivery_changes_nothing(client, session_factory):
    await seed(session_factory, make_seller(), make_show(), make_order("O1"))
    event = make_event("payment_intent.succeeded", payment_intent({"order_id": "O1"}),
                       event_id="E1")

    await post_event(client, event)
    before = await fetch(session_factory, Order, "O1")

    response = await post_event(client, event)

    assert response.status_code == 200
    after = await fetch(session_factory, Order, "O1")
    assert (after.status, after.batch_id, after.updated_at) == (
        before.status, before.batch_id, before.updated_at)
    assert len(await batches_for(session_factory)) == 1
    assert len(await notifications_for(session_factory)) == 1


async def test_scenario_c_second_order_joins_batch(client, session_factory):
    await seed(
        session_factory, make_seller(), make_show(),
        make_order("O1"),
        make_order("O2", price=Decimal("7.25"), delivery_fee=Decimal("1.00")),
    )

    await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "O1"}, "pi_1"), event_id="E1"))
    await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "O2"}, "pi_2"), event_id="E2"))

    [b1] = await batches_for(session_factory)
    o1 = await fetch(session_factory, Order, "O1")
    o2 = await fetch(session_factory, Order, "O2")
    assert o1.batch_id == o2.batch_id == b1.id
    assert b1.total_items == 2
    assert b1.total_amount == (o1.price + o1.delivery_fee) + (o2.price + o2.delivery_fee)
    assert b1.total_amount == Decimal("33.25")


async def test_scenario_d_cancel_after_conversion_keeps_intent(client, session_factory):
    await seed(session_factory, make_seller(), make_show(), make_product(), make_intent("I1"))

    await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"checkout_intent_id": "I1"}),
        event_id="E1"))
    i1 = await fetch(session_factory, CheckoutIntent, "I1")
    assert i1.intent_status == "converted"
    o3 = await fetch(session_factory, Order, i1.converted_order_id)
    assert o3.status == "paid"

    response = await post_event(client, make_event(
        "payment_intent.canceled", payment_intent({"checkout_intent_id": "I1"}),
        event_id="E2"))

    assert response.status_code == 200
    assert (await fetch(session_factory, CheckoutIntent, "I1")).intent_status == "converted"
    assert (await fetch(session_factory, Order, o3.id)).status == "paid"


async def test_scenario_e_deauthorization_is_final(client, session_factory):
    await seed(session_factory, make_seller())

    await post_event(client, make_event(
        "account.updated",
        {"id": ACCOUNT, "object": "account", "charges_enabled": True, "payouts_enabled": True},
        account=ACCOUNT))
    assert (await fetch(session_factory, Seller, SELLER)).stripe_connected is True

    await post_event(client, make_event(
        "account.application.deauthorized", {"id": "ca_1", "object": "application"},
        account=ACCOUNT))
    seller = await fetch(session_factory, Seller, SELLER)
    assert seller.stripe_connected is False
    assert seller.stripe_connected_at is None

    response = await post_event(client, make_event(
        "account.updated",
        {"id": ACCOUNT, "object": "account", "charges_enabled": True, "payouts_enabled": True},
        account=ACCOUNT))

    assert response.status_code == 200
    seller = await fetch(session_factory, Seller, SELLER)
    assert seller.stripe_connected is False
    assert seller.stripe_connected_at is None


async def test_terminal_order_is_never_mutated(client, session_factory):
    await seed(session_factory, make_order("O1", status="cancelled", price=Decimal("20.00")))

    response = await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "O1"}), event_id="E_late"))

    assert response.status_code == 200
    order = await fetch(session_factory, Order, "O1")
    assert order.status == "cancelled"
    assert order.price == Decimal("20.00")
    assert order.batch_id is None
    assert await batches_for(session_factory) == []


async def test_distinct_events_for_same_order_notify_once(client, session_factory):
    await seed(session_factory, make_seller(), make_show(), make_order("O1"))

    for event_id in ("E1", "E2", "E3"):
        response = await post_event(client, make_event(
            "payment_intent.succeeded", payment_intent({"order_id": "O1"}), event_id=event_id))
        assert response.status_code == 200

    notifications = await notifications_for(session_factory)
    assert [n.meta["event"] for n in notifications] == ["payment_confirmed"]
    assert (await fetch(session_factory, Order, "O1")).last_stripe_event_id == "E1"


async def test_one_open_batch_per_key_across_shows(client, session_factory):
    await seed(
        session_factory, make_seller(), make_show(),
        make_order("O1"),
        make_order("O2", show_id="show-other"),
        make_order("O3"),
    )

    for n, order_id in enumerate(("O1", "O2", "O3")):
        await post_event(client, make_event(
            "payment_intent.succeeded", payment_intent({"order_id": order_id}, f"pi_{n}"),
            event_id=f"E{n}"))

    open_batches = await fetch_all(
        session_factory,
        select(Batch).where(Batch.buyer_id == BUYER, Batch.status.in_(("active", "pending"))),
    )
    keys = [(b.buyer_id, b.seller_id, b.show_id) for b in open_batches]
    assert len(keys) == len(set(keys)) == 2


async def test_webhook_invalid_signature(client):
    payload = json.dumps(make_event("payment_intent.succeeded", {}))

    response = await client.post(
        "/webhook", content=payload,
        headers={"stripe-signature": sign(payload, secret="whsec_wrong")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid signature"


async def test_webhook_missing_signature(client):
    response = await client.post("/webhook", content="{}")

    assert response.status_code == 400


async def test_webhook_invalid_payload(client):
    payload = json.dumps({"id": "evt_1"})

    response = await client.post("/webhook", content=payload,
                                 headers={"stripe-signature": sign(payload)})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid payload"


async def test_webhook_missing_secret(client, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")

    response = await post_event(client, make_event("payment_intent.succeeded", {}))

    assert response.status_code == 401


async def test_webhook_unhandled_event_type(client):
    response = await post_event(client, make_event("charge.refunded", {"id": "ch_1"},
                                                   event_id="evt_other"))

    assert response.status_code == 200
    assert response.json() == {"received": True, "event_id": "evt_other"}


async def test_webhook_unknown_order_is_acknowledged(client):
    response = await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "missing"})))

    assert response.status_code == 200


async def test_webhook_batch_failure_returns_500_and_retry_succeeds(client, session_factory, mocker):
    from livepay.errors import BatchAttachError

    await seed(session_factory, make_seller(), make_show(), make_order("O1"))
    event = make_event("payment_intent.succeeded", payment_intent({"order_id": "O1"}),
                       event_id="E1")
    mocker.patch("livepay.orders.attach_to_batch",
                 side_effect=BatchAttachError("attach failed", order_id="O1"))

    response = await post_event(client, event)

    assert response.status_code == 500
    assert response.json()["error"] == "batch_attach_failed"
    assert (await fetch(session_factory, Order, "O1")).status == "pending"

    mocker.stopall()
    response = await post_event(client, event)

    assert response.status_code == 200
    order = await fetch(session_factory, Order, "O1")
    assert order.status == "paid"
    assert order.batch_id is not None


async def test_webhook_unexpected_error_returns_500(client, mocker):
    mocker.patch("livepay.orders.resolve_order", side_effect=RuntimeError("boom"))

    response = await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "O1"})))

    assert response.status_code == 500
    assert response.json()["error"] == "internal_error"


async def test_notification_failure_does_not_fail_webhook(client, session_factory, mocker):
    await seed(session_factory, make_seller(), make_show(), make_order("O1"))
    mocker.patch("livepay.notifications.find_seller", side_effect=RuntimeError("down"))

    response = await post_event(client, make_event(
        "payment_intent.succeeded", payment_intent({"order_id": "O1"})))

    assert response.status_code == 200
    assert (await fetch(session_factory, Order, "O1")).status == "paid"
    assert await notifications_for(session_factory) == []


async def test_concurrent_duplicate_deliveries_pay_once(client, session_factory):
    await seed(session_factory, make_seller(), make_show(), make_order("O1"))
    event = make_event("payment_intent.succeeded", payment_intent({"order_id": "O1"}),
                       event_id="E1")

    responses = await asyncio.gather(*(post_event(client, event) for _ in range(4)))

    assert [r.status_code for r in responses] == [200] * 4
    assert all(r.json() == {"received": True, "event_id": "E1"} for r in responses)
    order = await fetch(session_factory, Order, "O1")
    assert order.status == "paid"
    assert order.last_stripe_event_id == "E1"
    [batch] = await batches_for(session_factory)
    assert batch.total_items == 1
    assert len(await notifications_for(session_factory)) == 1


async def test_concurrent_same_key_orders_share_one_batch(client, session_factory):
    order_ids = [f"O{n}" for n in range(1, 5)]
    await seed(session_factory, make_seller(), make_show(), *(
        make_order(order_id, price=Decimal("1.00"), delivery_fee=Decimal("0.00"))
        for order_id in order_ids
    ))

    responses = await asyncio.gather(*(
        post_event(client, make_event(
            "payment_intent.succeeded",
            payment_intent({"order_id": order_id}, f"pi_{order_id}"),
            event_id=f"E_{order_id}"))
        for order_id in order_ids
    ))

    assert [r.status_code for r in responses] == [200] * 4
    [batch] = await batches_for(session_factory)
    assert batch.status == "pending"
    assert batch.total_items == 4
    assert batch.total_amount == Decimal("4.00")
    for order_id in order_ids:
        order = await fetch(session_factory, Order, order_id)
        assert order.status == "paid"
        assert order.batch_id == batch.id
    assert len(await notifications_for(session_factory)) == 4
