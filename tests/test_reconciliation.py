"""
Tests for payment webhook reconciliation.
"""
import logging
import threading
import time

import pytest

from conftest import FEE_PERCENT
from order_bot.errors import NotFoundError, StoreUnavailable, UpstreamUnavailable, WebhookRejected
from order_bot.models import Order
from order_bot.order_status import OrderStatus
from order_bot.services.idempotency import IdempotencyStore, payment_confirm_key, webhook_event_key
from order_bot.services.kv_store import InMemoryKeyValueStore
from order_bot.services.order import advance_order_status, cancel_order
from order_bot.services.reconciliation import (
    KeyedLocks,
    PaymentEvent,
    PaymentEventKind,
    PaymentReconciler,
    ReconciliationOutcome,
    parse_asaas_event,
    parse_stripe_event,
    verify_webhook_token,
)

Outcome = ReconciliationOutcome


def confirmed(payment_id, event_id="evt_1", event_type="PAYMENT_CONFIRMED"):
    return PaymentEvent(
        provider="asaas",
        event_type=event_type,
        kind=PaymentEventKind.CONFIRMED,
        event_id=event_id,
        payment_id=payment_id,
    )


class FlakyWritesKV(InMemoryKeyValueStore):
    fail_writes = False

    def set_if_absent(self, key, value, ttl_seconds):
        if self.fail_writes:
            raise StoreUnavailable("redis down")
        return super().set_if_absent(key, value, ttl_seconds)


@pytest.fixture
def reconciler(provider, idempotency_store, notifier):
    return PaymentReconciler(provider, idempotency_store, notifier, FEE_PERCENT)


# =============================================================================
# Confirmation flow
# =============================================================================

class TestConfirmation:
    def test_confirms_and_notifies(self, db_session, reconciler, awaiting_order, sender, restaurant, customer,
                                   idempotency_store):
        outcome = reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id))

        assert outcome == Outcome.CONFIRMED
        order = db_session.get(Order, awaiting_order.id)
        assert order.status == OrderStatus.PAID.value
        assert (order.platform_fee_cents, order.restaurant_amount_cents) == (200, 3800)
        assert order.paid_at is not None

        kitchen = sender.texts_to(restaurant.phone)
        assert kitchen[0].splitlines() == ["New order #001", "2x Burger", "Total: R$40.00"]
        assert kitchen[1] == "Payment confirmed for order #001."
        assert sender.texts_to(customer.phone) == ["Your order #001 is confirmed!"]

        assert idempotency_store.is_processed(webhook_event_key("asaas", "evt_1"))
        assert idempotency_store.get_result(payment_confirm_key(order.payment_id)) == order.id

    def test_duplicate_event(self, db_session, reconciler, awaiting_order, sender, provider):
        event = confirmed(awaiting_order.payment_id)
        reconciler.handle_event(db_session, event)
        sent = len(sender.sent)

        assert reconciler.handle_event(db_session, event) == Outcome.DUPLICATE_EVENT
        assert len(sender.sent) == sent
        assert len(provider.confirmed) == 1

    def test_second_event_for_same_payment(self, db_session, reconciler, awaiting_order, sender):
        reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id, "evt_1"))
        sent = len(sender.sent)

        outcome = reconciler.handle_event(
            db_session, confirmed(awaiting_order.payment_id, "evt_2", "PAYMENT_RECEIVED")
        )

        assert outcome == Outcome.ALREADY_CONFIRMED
        assert len(sender.sent) == sent

    def test_already_paid_order(self, db_session, reconciler, awaiting_order, provider, sender,
                                idempotency_store):
        awaiting_order.confirm_payment(awaiting_order.payment_id, 200, 3800)
        db_session.commit()

        outcome = reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id))

        assert outcome == Outcome.ALREADY_PAID
        assert provider.confirmed == []
        assert sender.sent == []
        assert idempotency_store.is_processed(payment_confirm_key(awaiting_order.payment_id))

    def test_payment_after_early_preparation_is_recorded(self, db_session, reconciler, awaiting_order, restaurant,
                                                         customer, provider, sender):
        restaurant.allow_preparing_before_payment = True
        db_session.commit()
        advance_order_status(db_session, awaiting_order.id, OrderStatus.PREPARING)

        outcome = reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id))

        assert outcome == Outcome.CONFIRMED
        assert provider.confirmed == [awaiting_order.payment_id]
        order = db_session.get(Order, awaiting_order.id)
        assert order.status == OrderStatus.PREPARING.value
        assert (order.platform_fee_cents, order.restaurant_amount_cents) == (200, 3800)
        assert order.paid_at is not None
        assert sender.texts_to(restaurant.phone) == ["Payment confirmed for order #001 (Preparing)."]
        assert sender.texts_to(customer.phone) == ["Payment received for order #001. Thank you!"]

        redelivery = confirmed(awaiting_order.payment_id, "evt_2", "PAYMENT_RECEIVED")
        assert reconciler.handle_event(db_session, redelivery) == Outcome.ALREADY_CONFIRMED

    def test_amount_mismatch_is_logged(self, db_session, reconciler, awaiting_order, provider, caplog):
        provider.confirm_amount_cents = 3999

        with caplog.at_level(logging.WARNING, logger="order_bot.services.reconciliation"):
            outcome = reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id))

        assert outcome == Outcome.CONFIRMED
        assert "differs from order" in caplog.text
        assert db_session.get(Order, awaiting_order.id).platform_fee_cents == 200


class TestEventsWithoutConfirmation:
    def test_irrelevant_event_is_ignored_once(self, db_session, reconciler, provider):
        event = PaymentEvent(provider="asaas", event_type="PAYMENT_CREATED",
                             kind=PaymentEventKind.OTHER, event_id="evt_9", payment_id="pay_x")

        assert reconciler.handle_event(db_session, event) == Outcome.IGNORED
        assert reconciler.handle_event(db_session, event) == Outcome.DUPLICATE_EVENT
        assert provider.confirmed == []

    def test_missing_payment_id(self, db_session, reconciler):
        assert reconciler.handle_event(db_session, confirmed(None)) == Outcome.MISSING_PAYMENT_ID

    def test_unknown_payment(self, db_session, reconciler, idempotency_store, caplog):
        with caplog.at_level(logging.ERROR, logger="order_bot.services.reconciliation"):
            outcome = reconciler.handle_event(db_session, confirmed("pay_unknown"))

        assert outcome == Outcome.ORDER_NOT_FOUND
        assert "no order has it" in caplog.text
        assert idempotency_store.is_processed(webhook_event_key("asaas", "evt_1"))

    def test_not_paid_yet_is_retried_later(self, db_session, reconciler, awaiting_order, provider):
        provider.confirm_status = "pending"
        event = confirmed(awaiting_order.payment_id)

        assert reconciler.handle_event(db_session, event) == Outcome.NOT_PAID
        assert db_session.get(Order, awaiting_order.id).status == OrderStatus.AWAITING_PAYMENT.value

        provider.confirm_status = "paid"
        assert reconciler.handle_event(db_session, event) == Outcome.CONFIRMED

    def test_split_update_notifies_both_parties(self, db_session, reconciler, awaiting_order, sender,
                                                customer, restaurant):
        event = PaymentEvent(provider="asaas", event_type="PAYMENT_SPLIT_DONE",
                             kind=PaymentEventKind.SPLIT_UPDATE, event_id="evt_3",
                             payment_id=awaiting_order.payment_id)

        assert reconciler.handle_event(db_session, event) == Outcome.SPLIT_NOTIFIED
        assert reconciler.handle_event(db_session, event) == Outcome.DUPLICATE_EVENT
        assert sender.texts_to(customer.phone) == ["Payment confirmed and settled for order #001."]
        assert sender.texts_to(restaurant.phone) == ["Split completed for order #001. Payout released."]

    def test_payment_on_cancelled_order_needs_attention(self, db_session, reconciler, awaiting_order,
                                                        idempotency_store, sender):
        cancel_order(db_session, awaiting_order.id)

        outcome = reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id))

        assert outcome == Outcome.NEEDS_ATTENTION
        assert db_session.get(Order, awaiting_order.id).status == OrderStatus.CANCELLED.value
        assert sender.sent == []
        assert idempotency_store.is_processed(webhook_event_key("asaas", "evt_1"))


# =============================================================================
# Failures and races
# =============================================================================

class TestFailures:
    def test_provider_failure_is_retryable(self, db_session, reconciler, awaiting_order, provider,
                                           idempotency_store):
        provider.fail_confirm = True
        event = confirmed(awaiting_order.payment_id)

        with pytest.raises(UpstreamUnavailable):
            reconciler.handle_event(db_session, event)

        assert db_session.get(Order, awaiting_order.id).status == OrderStatus.AWAITING_PAYMENT.value
        assert not idempotency_store.is_processed(webhook_event_key("asaas", "evt_1"))

        provider.fail_confirm = False
        assert reconciler.handle_event(db_session, event) == Outcome.CONFIRMED

    def test_mark_failure_is_loud_and_redelivery_is_safe(self, db_session, awaiting_order, provider,
                                                         notifier, sender, customer):
        kv = FlakyWritesKV()
        reconciler = PaymentReconciler(provider, IdempotencyStore(kv), notifier, FEE_PERCENT)
        event = confirmed(awaiting_order.payment_id)

        kv.fail_writes = True
        with pytest.raises(StoreUnavailable):
            reconciler.handle_event(db_session, event)
        assert db_session.get(Order, awaiting_order.id).status == OrderStatus.PAID.value

        kv.fail_writes = False
        assert reconciler.handle_event(db_session, event) == Outcome.ALREADY_PAID
        assert sender.texts_to(customer.phone) == ["Your order #001 is confirmed!"]

    def test_concurrent_delivery_wins(self, db_session, session_factory, reconciler, awaiting_order,
                                      provider, sender):
        def paid_elsewhere(payment_id):
            other = session_factory()
            order = other.get(Order, awaiting_order.id)
            order.confirm_payment(payment_id, 200, 3800)
            other.commit()
            other.close()

        provider.on_confirm = paid_elsewhere

        outcome = reconciler.handle_event(db_session, confirmed(awaiting_order.payment_id))

        assert outcome == Outcome.ALREADY_PAID
        assert sender.sent == []


# =============================================================================
# Parsing and authentication
# =============================================================================

class TestParsers:
    def test_asaas_confirmation(self):
        event = parse_asaas_event({
            "id": "evt_1",
            "event": "PAYMENT_RECEIVED",
            "payment": {"id": "pay_1", "value": 40.5},
        })
        assert event.kind == PaymentEventKind.CONFIRMED
        assert (event.event_id, event.payment_id, event.amount_cents) == ("evt_1", "pay_1", 4050)

    def test_asaas_split_and_other(self):
        split = parse_asaas_event({"event": "PAYMENT_SPLIT_REFUSED", "paymentId": "pay_1"})
        assert split.kind == PaymentEventKind.SPLIT_UPDATE
        assert split.payment_id == "pay_1"
        assert split.event_id is None

        assert parse_asaas_event({"event": "PAYMENT_CREATED"}).kind == PaymentEventKind.OTHER

    def test_stripe(self):
        event = parse_stripe_event({
            "id": "evt_s",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "amount": 4000}},
        })
        assert event.kind == PaymentEventKind.CONFIRMED
        assert (event.payment_id, event.amount_cents) == ("pi_1", 4000)

        assert parse_stripe_event({"type": "charge.refunded"}).kind == PaymentEventKind.OTHER


class TestVerifyWebhookToken:
    def test_valid_token(self, restaurant):
        verify_webhook_token(restaurant, "webhook-secret")

    @pytest.mark.parametrize("token", [None, "", "wrong"])
    def test_rejected(self, restaurant, token):
        with pytest.raises(WebhookRejected):
            verify_webhook_token(restaurant, token)

    def test_unknown_restaurant(self):
        with pytest.raises(NotFoundError):
            verify_webhook_token(None, "webhook-secret")

    def test_restaurant_without_webhook(self, restaurant):
        restaurant.payment_webhook_token = None
        with pytest.raises(NotFoundError):
            verify_webhook_token(restaurant, "webhook-secret")


class TestKeyedLocks:
    def test_serializes_same_key(self):
        locks = KeyedLocks()
        inside = []
        overlaps = []

        def worker():
            with locks.hold("order:1"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        with locks.hold("order:1"):
            with locks.hold("order:2"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_reconcilers_share_locks_by_default(self, provider, idempotency_store, notifier):
        first = PaymentReconciler(provider, idempotency_store, notifier, FEE_PERCENT)
        second = PaymentReconciler(provider, idempotency_store, notifier, FEE_PERCENT)
        own = KeyedLocks()

        assert first.locks is second.locks
        assert PaymentReconciler(provider, idempotency_store, notifier, FEE_PERCENT, locks=own).locks is own
