"""
Error taxonomy for the order core.

Business outcomes (ValidationError, NotFoundError, InvalidTransition,
ConflictError) carry a ``user_message`` that can be shown to the customer or
restaurant as-is. UpstreamUnavailable and InternalError describe
infrastructure failures; callers decide whether to retry or degrade.
"""

from typing import List, Optional


class OrderBotError(Exception):
    """Base class for every error raised by the order core."""

    user_message = "Something went wrong with your order. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(OrderBotError):
    """Bad input shape or range, rejected before any write."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, user_message: Optional[str] = None):
        self.errors = list(errors) if errors else [message]
        super().__init__(message, user_message=user_message or message)


class NotFoundError(OrderBotError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id, user_message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} not found",
            user_message=user_message or f"{entity} not found.",
        )


class InvalidTransition(OrderBotError):
    """A state-machine guard rejected the requested status change."""

    def __init__(self, current, requested, reason: Optional[str] = None):
        self.current = current
        self.requested = requested
        self.reason = reason or f"Cannot move order from {_value(current)} to {_value(requested)}"
        super().__init__(self.reason, user_message=self.reason)


class OrderNotCancellable(InvalidTransition):
    """Cancellation refused; ``reason`` tells the user what to do instead."""


class ConflictError(OrderBotError):
    """An idempotent replay carried data that conflicts with recorded state."""


class PaymentConflict(ConflictError):
    """A different payment id is already recorded for the order."""

    def __init__(self, order_id, recorded_payment_id: str, incoming_payment_id: str):
        self.order_id = order_id
        self.recorded_payment_id = recorded_payment_id
        self.incoming_payment_id = incoming_payment_id
        super().__init__(
            f"Order {order_id} already has payment {recorded_payment_id}; "
            f"refusing payment {incoming_payment_id}",
            user_message="This order already has a different payment attached.",
        )


class PaymentAlreadySet(ConflictError):
    """Payment info was already set with different data."""


class AmbiguityPending(ConflictError):
    """A cart already has an unresolved ambiguity."""


class WebhookRejected(OrderBotError):
    """A webhook failed authentication (missing or wrong token)."""

    user_message = "Unauthorized webhook."


class UpstreamUnavailable(OrderBotError):
    """The classifier or a payment provider failed or timed out."""

    user_message = "We could not reach one of our partners. Please try again in a moment."


class InternalError(OrderBotError):
    """Persistence failure."""


class StoreUnavailable(InternalError):
    """The key-value store (Redis) could not be reached."""


def _value(status) -> str:
    return getattr(status, "value", status)
