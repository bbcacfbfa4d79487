"""
Order Lifecycle: idempotent mutators for the Order aggregate
============================================================

Both message redelivery and payment-webhook redelivery are expected, so every
mutator here must be safe to call twice with identical arguments:

- An identical replay is a no-op and returns False.
- A replay that conflicts with recorded state raises (ConflictError or
  InvalidTransition) and leaves the order untouched.
- A real change returns True.

Transition rules themselves live in OrderStateMachine; this module only adds
the replay-safety around them. ``OrderLifecycle`` is mixed into the
SQLAlchemy ``Order`` model (see models.py) and only touches mapped attributes,
so it can be exercised on transient objects in tests.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import (
    InvalidTransition,
    OrderNotCancellable,
    PaymentAlreadySet,
    PaymentConflict,
    ValidationError,
)
from .order_state_machine import OrderStateMachine
from .order_status import PAID_OR_LATER, OrderStatus

logger = logging.getLogger(__name__)

# Targets reachable only through their own mutator
_DEDICATED_TARGETS = {
    OrderStatus.AWAITING_PAYMENT: "An order awaits payment only once a payment link is requested",
    OrderStatus.PAID: "An order is paid only when the payment provider confirms it",
    OrderStatus.CANCELLED: "Cancel the order instead of changing its status",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderLifecycle:
    """Replay-safe mutators shared by the Order model."""

    @property
    def status_enum(self) -> OrderStatus:
        return OrderStatus(self.status)

    def _set_status(self, status: OrderStatus) -> None:
        self.status = status.value
        self.updated_at = _now()

    # -------------------------------------------------------------------------
    # Generic status change
    # -------------------------------------------------------------------------

    def update_status(self, new_status: OrderStatus, allow_preparing_before_payment: bool = False) -> bool:
        """
        Move the order to ``new_status``.

        No-op if the order is already there. Terminal orders refuse any other
        target. Everything else is delegated to the state machine guard.

        AWAITING_PAYMENT, PAID and CANCELLED carry data of their own and are
        only reachable through ``update_payment_info``, ``confirm_payment``
        and ``cancel``.
        """
        new_status = OrderStatus(new_status)
        if self.status_enum == new_status:
            return False

        if new_status in _DEDICATED_TARGETS:
            raise InvalidTransition(self.status_enum, new_status, _DEDICATED_TARGETS[new_status])

        OrderStateMachine.assert_can_transition(
            self.status_enum, new_status, allow_preparing_before_payment
        )
        self._set_status(new_status)
        return True

    # -------------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------------

    def update_payment_info(self, method: str, link: str, payment_id: Optional[str] = None) -> bool:
        """
        Attach a payment link and move the order to AWAITING_PAYMENT.

        Raises:
            PaymentConflict: A different payment id is already recorded
            PaymentAlreadySet: A different link is already recorded, or the
                order is past the pre-payment states with different data
            InvalidTransition: The order is not in a pre-payment state
        """
        if payment_id and self.payment_id and self.payment_id != payment_id:
            raise PaymentConflict(self.id, self.payment_id, payment_id)

        if self.payment_link and self.payment_link != link:
            raise PaymentAlreadySet(
                f"Order {self.id} already has payment link {self.payment_link}",
                user_message="A payment link was already generated for this order.",
            )

        status = self.status_enum
        if status in (OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID):
            same_data = (
                self.payment_link == link
                and (self.payment_method is None or self.payment_method == method)
                and (not payment_id or self.payment_id == payment_id)
            )
            if same_data:
                return False
            raise PaymentAlreadySet(
                f"Order {self.id} is {status.value}; payment info cannot change",
                user_message="This order already has payment information.",
            )

        OrderStateMachine.assert_can_request_payment(status)

        self.payment_method = method
        self.payment_link = link
        if payment_id:
            self.payment_id = payment_id
        self._set_status(OrderStatus.AWAITING_PAYMENT)
        return True

    def confirm_payment(
        self,
        payment_id: str,
        platform_fee_cents: int,
        restaurant_amount_cents: int,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record a confirmed payment and move the order to PAID.

        An order the kitchen started before payment (restaurant opted in)
        keeps its status; only the payment id, split and ``paid_at`` are
        recorded.

        Returns:
            True only when this call moved the order into PAID. Callers use
            that to fire the kitchen notification exactly once.

        Raises:
            PaymentConflict: A different payment id is already recorded
            InvalidTransition: The order is not awaiting payment
            ValidationError: Fee and restaurant amount do not add up to the
                order total
        """
        if not payment_id:
            raise ValidationError("Payment id is required")

        if self.payment_id and self.payment_id != payment_id:
            raise PaymentConflict(self.id, self.payment_id, payment_id)

        status = self.status_enum
        if status in PAID_OR_LATER and self.payment_id == payment_id:
            if self.paid_at is not None:
                # Identical replay
                return False
            self._record_payment(payment_id, platform_fee_cents, restaurant_amount_cents, paid_at)
            logger.info("Order %s (%s) paid with payment %s", self.id, status.value, payment_id)
            return False

        OrderStateMachine.assert_can_confirm_payment(status)

        self._record_payment(payment_id, platform_fee_cents, restaurant_amount_cents, paid_at)
        self._set_status(OrderStatus.PAID)
        logger.info("Order %s paid with payment %s", self.id, payment_id)
        return True

    def _record_payment(
        self,
        payment_id: str,
        platform_fee_cents: int,
        restaurant_amount_cents: int,
        paid_at: Optional[datetime],
    ) -> None:
        if self.platform_fee_cents is None:
            if platform_fee_cents + restaurant_amount_cents != self.total_cents:
                raise ValidationError(
                    f"Split {platform_fee_cents}+{restaurant_amount_cents} does not match "
                    f"order total {self.total_cents}"
                )
            self.platform_fee_cents = platform_fee_cents
            self.restaurant_amount_cents = restaurant_amount_cents

        self.payment_id = payment_id
        self.paid_at = paid_at or _now()
        self.updated_at = _now()

    # -------------------------------------------------------------------------
    # Kitchen progress
    # -------------------------------------------------------------------------

    def mark_preparing(self, allow_before_payment: bool = False) -> bool:
        return self.update_status(OrderStatus.PREPARING, allow_preparing_before_payment=allow_before_payment)

    def mark_ready(self) -> bool:
        return self.update_status(OrderStatus.READY)

    def mark_delivered(self) -> bool:
        return self.update_status(OrderStatus.DELIVERED)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self) -> bool:
        """
        Cancel the order.

        Raises:
            OrderNotCancellable: The order is in preparation, ready, paid
                (must be refunded out-of-band) or delivered
        """
        status = self.status_enum
        if status == OrderStatus.CANCELLED:
            return False

        if not OrderStateMachine.can_cancel(status):
            if status in (OrderStatus.PREPARING, OrderStatus.READY):
                reason = "Cannot cancel an order that is being prepared or is ready"
            elif status == OrderStatus.PAID:
                reason = "Cannot cancel a paid order. Contact the restaurant for a refund."
            else:
                reason = f"Cannot cancel an order that is {status.value}"
            raise OrderNotCancellable(status, OrderStatus.CANCELLED, reason)

        self._set_status(OrderStatus.CANCELLED)
        return True

    # -------------------------------------------------------------------------
    # Totals
    # -------------------------------------------------------------------------

    def recalculate_total(self) -> bool:
        """Recompute total_cents from the current items; False if unchanged."""
        total = sum(item.line_total_cents for item in self.items)
        if total == self.total_cents:
            return False
        self.total_cents = total
        self.updated_at = _now()
        return True


