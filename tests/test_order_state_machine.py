"""
Tests for the order status enum, its lookup tables and the transition guards.
"""
import logging

import pytest

from order_bot.errors import InvalidTransition
from order_bot.order_state_machine import OrderStateMachine
from order_bot.order_status import (
    OrderStatus,
    customer_status_message,
    status_label,
)

ALL = list(OrderStatus)
S = OrderStatus


class TestPredicates:
    @pytest.mark.parametrize("status", ALL)
    def test_can_cancel_only_before_payment(self, status):
        expected = status in (S.DRAFT, S.NEW, S.AWAITING_PAYMENT)
        assert OrderStateMachine.can_cancel(status) is expected

    @pytest.mark.parametrize("status", ALL)
    def test_can_modify_only_while_building(self, status):
        assert OrderStateMachine.can_modify(status) is (status in (S.DRAFT, S.NEW))

    @pytest.mark.parametrize("status", ALL)
    def test_can_request_payment_only_pre_payment(self, status):
        assert OrderStateMachine.can_request_payment(status) is (status in (S.DRAFT, S.NEW))

    @pytest.mark.parametrize("status", ALL)
    def test_can_confirm_payment_only_when_awaiting(self, status):
        assert OrderStateMachine.can_confirm_payment(status) is (status == S.AWAITING_PAYMENT)

    @pytest.mark.parametrize("status", ALL)
    def test_can_mark_ready_only_from_preparing(self, status):
        assert OrderStateMachine.can_mark_ready(status) is (status == S.PREPARING)

    def test_terminal_states(self):
        assert OrderStateMachine.is_terminal(S.DELIVERED)
        assert OrderStateMachine.is_terminal(S.CANCELLED)
        assert not OrderStateMachine.is_terminal(S.PAID)

    def test_accepts_raw_status_strings(self):
        assert OrderStateMachine.can_cancel("new")
        assert not OrderStateMachine.can_cancel("paid")


class TestPreparingBeforePayment:
    def test_preparing_requires_payment_by_default(self):
        assert OrderStateMachine.can_mark_preparing(S.PAID)
        assert not OrderStateMachine.can_mark_preparing(S.NEW)
        assert not OrderStateMachine.can_mark_preparing(S.AWAITING_PAYMENT)

    def test_opt_in_allows_new_and_awaiting_payment(self):
        assert OrderStateMachine.can_mark_preparing(S.NEW, allow_before_payment=True)
        assert OrderStateMachine.can_mark_preparing(S.AWAITING_PAYMENT, allow_before_payment=True)
        assert not OrderStateMachine.can_mark_preparing(S.DRAFT, allow_before_payment=True)
        assert not OrderStateMachine.can_mark_preparing(S.READY, allow_before_payment=True)

    def test_opt_in_use_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="order_bot.order_state_machine"):
            OrderStateMachine.assert_can_mark_preparing(S.NEW, allow_before_payment=True)

        assert any("before payment" in r.message for r in caplog.records)


class TestGuards:
    def test_guard_error_carries_current_and_requested(self):
        with pytest.raises(InvalidTransition) as exc_info:
            OrderStateMachine.assert_can_confirm_payment(S.NEW)

        assert exc_info.value.current == S.NEW
        assert exc_info.value.requested == S.PAID

    def test_terminal_state_cannot_move(self):
        with pytest.raises(InvalidTransition) as exc_info:
            OrderStateMachine.assert_can_transition(S.CANCELLED, S.NEW)

        assert "cancelled" in exc_info.value.reason

    def test_delivered_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransition):
            OrderStateMachine.assert_can_transition(S.DELIVERED, S.CANCELLED)

    def test_happy_path_transitions(self):
        path = [S.DRAFT, S.NEW, S.AWAITING_PAYMENT, S.PAID, S.PREPARING, S.READY, S.DELIVERED]
        for current, target in zip(path, path[1:]):
            OrderStateMachine.assert_can_transition(current, target)

    def test_skipping_payment_rejected(self):
        with pytest.raises(InvalidTransition):
            OrderStateMachine.assert_can_transition(S.NEW, S.PAID)

    def test_regression_rejected(self):
        with pytest.raises(InvalidTransition):
            OrderStateMachine.assert_can_transition(S.AWAITING_PAYMENT, S.NEW)

    @pytest.mark.parametrize("guard,status", [
        (OrderStateMachine.assert_can_cancel, S.PAID),
        (OrderStateMachine.assert_can_modify, S.AWAITING_PAYMENT),
        (OrderStateMachine.assert_can_request_payment, S.CANCELLED),
        (OrderStateMachine.assert_can_mark_ready, S.PAID),
        (OrderStateMachine.assert_can_mark_delivered, S.PREPARING),
    ])
    def test_guards_reject(self, guard, status):
        with pytest.raises(InvalidTransition):
            guard(status)

    def test_guards_accept(self):
        OrderStateMachine.assert_can_cancel(S.AWAITING_PAYMENT)
        OrderStateMachine.assert_can_modify(S.DRAFT)
        OrderStateMachine.assert_can_mark_delivered(S.READY)


class TestStatusTables:
    def test_every_status_has_label_and_message(self):
        for status in ALL:
            assert status_label(status)
            assert "#042" in customer_status_message(status, "042")
