class LivepayError(Exception):
    """Base class for errors raised by the payment pipeline."""


class ConfigError(LivepayError):
    """Server-side configuration (e.g. the webhook secret) is missing."""


class InvalidSignature(LivepayError):
    """Webhook signature header is missing or does not match the body."""


class InvalidPayload(LivepayError):
    """Webhook body is not a well-formed event envelope."""


class DuplicateEventClaim(LivepayError):
    """Another delivery already owns the transition for this event."""

    def __init__(self, event_id, order_id=None):
        super().__init__(f"event {event_id} already claimed (order {order_id})")
        self.event_id = event_id
        self.order_id = order_id


class CorrectnessError(LivepayError):
    """
    A failure that would leave orders or batches inconsistent if swallowed.

    These are surfaced to the HTTP layer as a 500 so the provider redelivers
    the event; `tag` identifies the failing step in the response body.
    """
    tag = "correctness_failure"

    def __init__(self, message, **context):
        super().__init__(message)
        self.context = context


class ClaimError(CorrectnessError):
    tag = "claim_failed"


class BatchAttachError(CorrectnessError):
    tag = "batch_attach_failed"


class BatchRecomputeError(CorrectnessError):
    tag = "batch_recompute_failed"
