import stripe

from livepay.config import platform_fee_percent, stripe_secret_key

stripe.api_key = stripe_secret_key()

MINIMUM_CHARGE_CENTS = 50

# intents in these states can still be confirmed by the client
REUSABLE_INTENT_STATUSES = ("requires_payment_method", "requires_confirmation")


def application_fee(amount: int) -> int:
    return round(amount * platform_fee_percent() / 100)


def create_payment(amount: int, currency: str, metadata: dict,
                   idempotency_key: str, destination: str = None):
    params = dict(
        amount=amount,
        currency=currency,
        automatic_payment_methods={"enabled": True},
        metadata=metadata,
    )
    if destination:
        # destination charge: funds settle on the seller's connected account
        params["transfer_data"] = {"destination": destination}
        params["application_fee_amount"] = application_fee(amount)

    return stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)


def retrieve_payment(payment_intent_id: str):
    return stripe.PaymentIntent.retrieve(payment_intent_id)


def cancel_payment(payment_intent_id: str):
    return stripe.PaymentIntent.cancel(payment_intent_id)


def refund_payment(payment_intent_id: str, order_id: str, stripe_account: str,
                   reason: str = None):
    params = dict(payment_intent=payment_intent_id, metadata={"order_id": order_id})
    if reason:
        params["reason"] = reason

    return stripe.Refund.create(
        stripe_account=stripe_account,
        idempotency_key=f"refund_order_{order_id}",
        **params,
    )
