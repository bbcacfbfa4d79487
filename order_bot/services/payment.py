"""
Payment Requests
================

The order core never talks HTTP to a payment provider. It consumes the
``PaymentProvider`` contract below; concrete clients (Asaas, Stripe, ...)
live outside this package.

``request_payment`` is what runs when the customer picks a payment method:

1. Replay: if the order already has a link, return it without calling the
   provider again.
2. Guard: only DRAFT/NEW orders of an open restaurant may request payment.
3. Split the total between platform and restaurant (``compute_split``).
4. Call ``provider.create_payment``. No lock and no pending write is held
   across the call.
5. Re-read the order. If a concurrent request attached a link meanwhile,
   cancel our provider payment (best-effort) and return theirs.
6. ``update_payment_info`` with method, link AND payment id, so the webhook
   can find the order by payment id later.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..errors import ConflictError, UpstreamUnavailable, ValidationError
from ..hours import is_open_at, utcnow
from ..models import Order
from ..money import PaymentSplit, compute_split
from ..order_state_machine import OrderStateMachine
from .order import commit_order, format_order_number, get_order

logger = logging.getLogger(__name__)


class PaymentMethod(str, Enum):
    PIX = "pix"
    CARD = "card"


class PaymentIntent(BaseModel):
    payment_id: str
    payment_link: str
    qr_code: Optional[str] = None
    status: str = "pending"
    expires_at: Optional[datetime] = None


class PaymentConfirmation(BaseModel):
    payment_id: str
    status: str
    paid_at: Optional[datetime] = None
    amount_cents: Optional[int] = None
    platform_fee_cents: Optional[int] = None
    restaurant_amount_cents: Optional[int] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


class PaymentProvider(ABC):
    """Contract every payment provider client implements."""

    name = "provider"

    @abstractmethod
    def create_payment(
        self,
        order_id: int,
        amount_cents: int,
        method: PaymentMethod,
        split: PaymentSplit,
        description: Optional[str] = None,
    ) -> PaymentIntent:
        """Create a payment and return its id and customer-facing link."""

    @abstractmethod
    def confirm_payment(self, payment_id: str) -> PaymentConfirmation:
        """Fetch the confirmed details of a payment."""

    @abstractmethod
    def cancel_payment(self, payment_id: str) -> bool:
        """Cancel a pending payment. True if the provider cancelled it."""


@dataclass
class PaymentRequestResult:
    order: Order
    payment_link: str
    qr_code: Optional[str] = None
    created: bool = False


def call_provider(operation: str, fn, *args, **kwargs):
    """Invoke a provider method, turning unexpected failures into UpstreamUnavailable."""
    try:
        return fn(*args, **kwargs)
    except UpstreamUnavailable:
        raise
    except Exception as exc:
        logger.exception("Payment provider %s failed", operation)
        raise UpstreamUnavailable(f"Payment provider {operation} failed: {exc}") from exc


def _discard_intent(provider: PaymentProvider, intent: PaymentIntent) -> None:
    try:
        provider.cancel_payment(intent.payment_id)
    except Exception:
        logger.exception("Could not cancel orphaned payment %s", intent.payment_id)


def request_payment(
    db: Session,
    order_id: int,
    method: PaymentMethod,
    provider: PaymentProvider,
    fee_percent: Decimal,
    now: Optional[datetime] = None,
) -> PaymentRequestResult:
    """
    Generate (or return the existing) payment link for an order.

    Args:
        db: Database session
        order_id: Order to charge
        method: "pix" or "card"
        provider: Payment provider client
        fee_percent: Platform fee percentage, e.g. Decimal("5")
        now: Point in time for the opening-hours check

    Raises:
        NotFoundError: Order missing
        InvalidTransition: Order is past the pre-payment states
        ValidationError: Empty order or restaurant closed
        UpstreamUnavailable: The provider failed; safe to retry
    """
    method = PaymentMethod(method)
    order = get_order(db, order_id)

    if order.payment_link:
        logger.info("Order %s already has a payment link; returning it", order.id)
        return PaymentRequestResult(order=order, payment_link=order.payment_link)

    OrderStateMachine.assert_can_request_payment(order.status_enum)
    if not order.items or order.total_cents <= 0:
        raise ValidationError(f"Order {order.id} has no items", user_message="Your order is empty.")

    restaurant = order.restaurant
    if not is_open_at(restaurant.opening_hours, restaurant.timezone, now or utcnow()):
        raise ValidationError(
            f"Restaurant {restaurant.id} is closed",
            user_message="The restaurant is closed right now. Please try again during opening hours.",
        )

    split = compute_split(order.total_cents, fee_percent)
    # End the read transaction before the provider call
    db.commit()

    intent = call_provider(
        "create_payment",
        provider.create_payment,
        order.id,
        order.total_cents,
        method,
        split,
        description=f"Order #{format_order_number(order)}",
    )

    db.refresh(order)
    if order.payment_link:
        logger.warning(
            "Order %s got a payment link concurrently; discarding payment %s",
            order.id, intent.payment_id,
        )
        _discard_intent(provider, intent)
        return PaymentRequestResult(order=order, payment_link=order.payment_link)

    order.update_payment_info(method.value, intent.payment_link, intent.payment_id)
    try:
        commit_order(db, order)
    except ConflictError:
        db.refresh(order)
        if order.payment_link:
            _discard_intent(provider, intent)
            return PaymentRequestResult(order=order, payment_link=order.payment_link)
        raise

    logger.info(
        "Payment %s requested for order %s: %s, total=%s fee=%s",
        intent.payment_id, order.id, method.value, split.total_cents, split.platform_fee_cents,
    )
    return PaymentRequestResult(
        order=order,
        payment_link=intent.payment_link,
        qr_code=intent.qr_code,
        created=True,
    )
