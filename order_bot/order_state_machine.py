"""
Order State Machine
===================

Pure transition guards over OrderStatus. The machine holds no state of its
own: the Order aggregate asks it before every mutation and applies the change
itself.

Lifecycle:
----------
    DRAFT -> NEW -> AWAITING_PAYMENT -> PAID -> PREPARING -> READY -> DELIVERED

CANCELLED is reachable from DRAFT, NEW and AWAITING_PAYMENT only. DELIVERED
and CANCELLED are terminal.

Each ``can_*`` predicate has an ``assert_can_*`` twin that raises
InvalidTransition carrying both the current and the requested status.

Preparing before payment:
-------------------------
Some restaurants send orders to the kitchen before the customer pays. That
is only allowed when the caller passes ``allow_before_payment=True``, which
callers take from the restaurant's ``allow_preparing_before_payment`` column.
It is never a default.
"""

import logging
from typing import Dict, FrozenSet

from .errors import InvalidTransition
from .order_status import OrderStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


S = OrderStatus

_MODIFIABLE = frozenset({S.DRAFT, S.NEW})
_CANCELLABLE = frozenset({S.DRAFT, S.NEW, S.AWAITING_PAYMENT})
_PRE_PAYMENT = frozenset({S.DRAFT, S.NEW})
_PREPARING_BEFORE_PAYMENT = frozenset({S.NEW, S.AWAITING_PAYMENT})

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.DRAFT: frozenset({S.NEW, S.AWAITING_PAYMENT, S.CANCELLED}),
    S.NEW: frozenset({S.AWAITING_PAYMENT, S.CANCELLED}),
    S.AWAITING_PAYMENT: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset({S.PREPARING}),
    S.PREPARING: frozenset({S.READY}),
    S.READY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}


class OrderStateMachine:
    """Stateless validator for order status transitions."""

    # --- predicates ---------------------------------------------------------

    @staticmethod
    def is_terminal(status: OrderStatus) -> bool:
        return OrderStatus(status) in TERMINAL_STATUSES

    @staticmethod
    def can_modify(status: OrderStatus) -> bool:
        return OrderStatus(status) in _MODIFIABLE

    @staticmethod
    def can_cancel(status: OrderStatus) -> bool:
        return OrderStatus(status) in _CANCELLABLE

    @staticmethod
    def can_request_payment(status: OrderStatus) -> bool:
        return OrderStatus(status) in _PRE_PAYMENT

    @staticmethod
    def can_confirm_payment(status: OrderStatus) -> bool:
        return OrderStatus(status) == S.AWAITING_PAYMENT

    @staticmethod
    def can_mark_preparing(status: OrderStatus, allow_before_payment: bool = False) -> bool:
        status = OrderStatus(status)
        if status == S.PAID:
            return True
        return allow_before_payment and status in _PREPARING_BEFORE_PAYMENT

    @staticmethod
    def can_mark_ready(status: OrderStatus) -> bool:
        return OrderStatus(status) == S.PREPARING

    @staticmethod
    def can_mark_delivered(status: OrderStatus) -> bool:
        return OrderStatus(status) == S.READY

    @classmethod
    def can_transition(
        cls,
        current: OrderStatus,
        target: OrderStatus,
        allow_preparing_before_payment: bool = False,
    ) -> bool:
        current = OrderStatus(current)
        target = OrderStatus(target)
        if target == S.PREPARING:
            return cls.can_mark_preparing(current, allow_preparing_before_payment)
        return target in TRANSITIONS[current]

    # --- guards -------------------------------------------------------------

    @classmethod
    def assert_can_modify(cls, status: OrderStatus) -> None:
        if not cls.can_modify(status):
            raise InvalidTransition(
                status, status, "Order can only be modified while it is being built"
            )

    @classmethod
    def assert_can_cancel(cls, status: OrderStatus) -> None:
        if not cls.can_cancel(status):
            raise InvalidTransition(
                status, S.CANCELLED, "Order can only be cancelled before preparation starts"
            )

    @classmethod
    def assert_can_request_payment(cls, status: OrderStatus) -> None:
        if not cls.can_request_payment(status):
            raise InvalidTransition(
                status, S.AWAITING_PAYMENT, "Payment can only be requested for orders being built"
            )

    @classmethod
    def assert_can_confirm_payment(cls, status: OrderStatus) -> None:
        if not cls.can_confirm_payment(status):
            raise InvalidTransition(
                status, S.PAID, "Payment can only be confirmed for orders awaiting payment"
            )

    @classmethod
    def assert_can_mark_preparing(cls, status: OrderStatus, allow_before_payment: bool = False) -> None:
        if not cls.can_mark_preparing(status, allow_before_payment):
            raise InvalidTransition(
                status, S.PREPARING, "Order can only move to preparation after payment"
            )
        if OrderStatus(status) != S.PAID:
            logger.warning(
                "Order moving to preparation from %s before payment (restaurant opted in)",
                OrderStatus(status).value,
            )

    @classmethod
    def assert_can_mark_ready(cls, status: OrderStatus) -> None:
        if not cls.can_mark_ready(status):
            raise InvalidTransition(
                status, S.READY, "Order can only be marked ready while in preparation"
            )

    @classmethod
    def assert_can_mark_delivered(cls, status: OrderStatus) -> None:
        if not cls.can_mark_delivered(status):
            raise InvalidTransition(
                status, S.DELIVERED, "Order can only be delivered once it is ready"
            )

    @classmethod
    def assert_can_transition(
        cls,
        current: OrderStatus,
        target: OrderStatus,
        allow_preparing_before_payment: bool = False,
    ) -> None:
        """
        Validate an arbitrary status change.

        Dispatches to the specific guard for the target so the error message
        explains which rule was broken.
        """
        current = OrderStatus(current)
        target = OrderStatus(target)

        if cls.is_terminal(current):
            raise InvalidTransition(
                current, target, f"Order is already {current.value} and cannot change"
            )

        if target == S.CANCELLED:
            cls.assert_can_cancel(current)
        elif target == S.AWAITING_PAYMENT:
            cls.assert_can_request_payment(current)
        elif target == S.PAID:
            cls.assert_can_confirm_payment(current)
        elif target == S.PREPARING:
            cls.assert_can_mark_preparing(current, allow_preparing_before_payment)
        elif target == S.READY:
            cls.assert_can_mark_ready(current)
        elif target == S.DELIVERED:
            cls.assert_can_mark_delivered(current)
        elif not cls.can_transition(current, target):
            raise InvalidTransition(current, target)
