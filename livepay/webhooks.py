"""
Routes verified Stripe events to their handlers.

Handlers register themselves per event type. An event type with no handler
is acknowledged and logged so that Stripe stops redelivering it.
"""
import logging
from typing import Awaitable, Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from livepay import connect, orders
from livepay.verifier import StripeEvent

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, StripeEvent], Awaitable[object]]

WEBHOOK_HANDLERS: Dict[str, Handler] = {}


def register_handler(event_type: str):
    def decorator(func: Handler) -> Handler:
        WEBHOOK_HANDLERS[event_type] = func
        return func
    return decorator


@register_handler("payment_intent.succeeded")
async def on_payment_succeeded(session, event):
    return await orders.handle_payment_succeeded(session, event)


@register_handler("payment_intent.payment_failed")
async def on_payment_failed(session, event):
    return await orders.handle_payment_failed(session, event)


@register_handler("payment_intent.canceled")
async def on_payment_canceled(session, event):
    return await orders.handle_payment_canceled(session, event)


@register_handler(connect.ACCOUNT_UPDATED)
@register_handler(connect.CAPABILITY_UPDATED)
@register_handler(connect.ACCOUNT_DEAUTHORIZED)
async def on_connect_event(session, event):
    return await connect.sync_connect_account(session, event)


async def dispatch_event(session: AsyncSession, event: StripeEvent) -> bool:
    """Run the handler for `event`. Returns False when nothing handles its type."""
    handler = WEBHOOK_HANDLERS.get(event.type)
    if handler is None:
        logger.info("Unhandled event type", extra={
            "event_id": event.id, "event_type": event.type})
        return False

    logger.info("Processing Stripe event", extra={
        "event_id": event.id, "event_type": event.type})
    await handler(session, event)
    return True
