"""
Authentication and parsing of inbound Stripe webhook deliveries.

Nothing in here touches the database: an event that fails verification is
rejected before any state change.
"""
import logging
from typing import Any, Dict, Optional

import stripe
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from livepay.errors import ConfigError, InvalidPayload, InvalidSignature

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


class EventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    obj: Dict[str, Any] = Field(alias="object")


class StripeEvent(BaseModel):
    id: str
    type: str
    # set on Connect events that originate from a connected account
    account: Optional[str] = None
    data: EventData

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.obj

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data.obj.get("metadata") or {}


def verify_event(payload: bytes, signature: Optional[str], secret: Optional[str],
                 tolerance: int = SIGNATURE_TOLERANCE_SECONDS) -> StripeEvent:
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise ConfigError("STRIPE_WEBHOOK_SECRET not configured")

    if not signature:
        logger.warning("Missing stripe-signature header")
        raise InvalidSignature("Missing stripe-signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPayload("Webhook body is not UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Signature verification failed", extra={"reason": str(exc)})
        raise InvalidSignature(str(exc)) from exc

    try:
        return StripeEvent.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("Malformed webhook envelope", extra={"errors": exc.error_count()})
        raise InvalidPayload("Invalid payload") from exc
