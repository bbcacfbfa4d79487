"""
Payment Reconciliation
======================

Applies payment-provider webhooks to orders. Providers redeliver webhooks,
send several events for one payment, and may deliver two copies at the same
time, so every step is idempotent.

Flow (``PaymentReconciler.handle_event``):
------------------------------------------
1. Event already handled (``webhook:<provider>:<event_id>``) -> stop.
2. Split payout updates notify both parties; other non-confirmation events
   are marked seen and ignored.
3. Payment already reconciled (``payment:confirm:<payment_id>``) -> stop.
   This is the primary key: one payment can produce several events.
4. No order for the payment id -> logged at ERROR for operators and marked
   seen, so the provider does not retry forever.
5. Order already PAID (or further) with the payment recorded -> stop. An
   order the kitchen started before payment still gets its split and
   ``paid_at`` written.
6. Ask the provider for the confirmed details. No lock is held here.
7. Under a per-order lock, re-read the order; stop if a concurrent delivery
   already marked it PAID.
8. ``confirm_payment`` with the configured split and commit. The ``version``
   column turns a lost race with another process into a conflict, which is
   re-checked instead of applied twice.
9. Notify the kitchen only when this call performed the PAID transition;
   an order already in the kitchen only gets a payment-received note.
10. Mark event id and payment id processed. This write fails loudly, so a
    crash before it leads to a safe retry rather than a skipped payment.

The platform fee percentage is injected into the reconciler, so the split is
a pure function of the order total and that value.
"""

import hmac
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..config import IGNORED_EVENT_TTL_SECONDS, WEBHOOK_IDEMPOTENCY_TTL_SECONDS
from ..errors import ConflictError, InvalidTransition, NotFoundError, ValidationError, WebhookRejected
from ..models import Restaurant
from ..money import compute_split, to_cents
from ..order_status import PAID_OR_LATER
from .idempotency import IdempotencyStore, payment_confirm_key, webhook_event_key
from .notification import NotificationService
from .order import commit_order, find_order_by_payment_id
from .payment import PaymentProvider, call_provider

logger = logging.getLogger(__name__)

ASAAS_CONFIRMED_EVENTS = frozenset({"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED"})
ASAAS_SPLIT_PREFIX = "PAYMENT_SPLIT_"
STRIPE_CONFIRMED_EVENTS = frozenset({"payment_intent.succeeded"})


# =============================================================================
# Events
# =============================================================================

class PaymentEventKind(str, Enum):
    CONFIRMED = "confirmed"
    SPLIT_UPDATE = "split_update"
    OTHER = "other"


class PaymentEvent(BaseModel):
    """Provider-agnostic view of one webhook delivery."""

    provider: str
    event_type: str
    kind: PaymentEventKind
    event_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount_cents: Optional[int] = None


def parse_asaas_event(body: Dict[str, Any]) -> PaymentEvent:
    event_type = body.get("event") or ""
    payment = body.get("payment") or {}

    if event_type in ASAAS_CONFIRMED_EVENTS:
        kind = PaymentEventKind.CONFIRMED
    elif event_type.startswith(ASAAS_SPLIT_PREFIX):
        kind = PaymentEventKind.SPLIT_UPDATE
    else:
        kind = PaymentEventKind.OTHER

    amount_cents = None
    if payment.get("value") is not None:
        amount_cents = to_cents(str(payment["value"]))

    return PaymentEvent(
        provider="asaas",
        event_type=event_type,
        kind=kind,
        event_id=body.get("id") or None,
        payment_id=payment.get("id") or body.get("paymentId"),
        amount_cents=amount_cents,
    )


def parse_stripe_event(body: Dict[str, Any]) -> PaymentEvent:
    event_type = body.get("type") or ""
    obj = (body.get("data") or {}).get("object") or {}
    kind = PaymentEventKind.CONFIRMED if event_type in STRIPE_CONFIRMED_EVENTS else PaymentEventKind.OTHER
    return PaymentEvent(
        provider="stripe",
        event_type=event_type,
        kind=kind,
        event_id=body.get("id"),
        payment_id=obj.get("id"),
        amount_cents=obj.get("amount"),
    )


def verify_webhook_token(restaurant: Optional[Restaurant], token: Optional[str]) -> None:
    """
    Check the shared secret a provider sends with a restaurant's webhooks.

    Raises:
        WebhookRejected: Token missing or wrong
        NotFoundError: Restaurant missing or has no webhook configured
    """
    if not token:
        raise WebhookRejected("Missing webhook token")
    if restaurant is None or not restaurant.payment_webhook_token:
        raise NotFoundError("Restaurant webhook", getattr(restaurant, "id", None))
    if not hmac.compare_digest(restaurant.payment_webhook_token, token):
        logger.warning("Invalid webhook token for restaurant %s", restaurant.id)
        raise WebhookRejected(f"Invalid webhook token for restaurant {restaurant.id}")


# =============================================================================
# Per-order locks
# =============================================================================

class KeyedLocks:
    """One threading.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every reconciler in the process unless one is injected
_DEFAULT_LOCKS = KeyedLocks()


def _payment_recorded(order) -> bool:
    """PAID or later with the payment written down (kitchen may start before payment)."""
    return order.status_enum in PAID_OR_LATER and order.paid_at is not None


# =============================================================================
# Reconciler
# =============================================================================

class ReconciliationOutcome(str, Enum):
    DUPLICATE_EVENT = "duplicate_event"
    IGNORED = "ignored"
    MISSING_PAYMENT_ID = "missing_payment_id"
    ALREADY_CONFIRMED = "already_confirmed"
    ORDER_NOT_FOUND = "order_not_found"
    ALREADY_PAID = "already_paid"
    NOT_PAID = "not_paid"
    NEEDS_ATTENTION = "needs_attention"
    SPLIT_NOTIFIED = "split_notified"
    CONFIRMED = "confirmed"


class PaymentReconciler:
    """
    Args:
        provider: Payment provider client used to fetch confirmed details
        idempotency_store: Where handled events and payments are recorded
        notifier: Kitchen/customer notifications
        fee_percent: Platform fee percentage applied to every payment
        locks: Per-order lock registry, shared by reconcilers in one process
    """

    def __init__(
        self,
        provider: PaymentProvider,
        idempotency_store: IdempotencyStore,
        notifier: NotificationService,
        fee_percent: Decimal,
        locks: Optional[KeyedLocks] = None,
    ):
        self.provider = provider
        self.store = idempotency_store
        self.notifier = notifier
        self.fee_percent = Decimal(str(fee_percent))
        self.locks = locks or _DEFAULT_LOCKS

    def _event_key(self, event: PaymentEvent) -> Optional[str]:
        if not event.event_id:
            return None
        return webhook_event_key(event.provider, event.event_id)

    def _mark_event(self, event: PaymentEvent, ttl: int) -> None:
        key = self._event_key(event)
        if key:
            self.store.mark_processed(key, ttl)

    def handle_event(self, db: Session, event: PaymentEvent) -> ReconciliationOutcome:
        event_key = self._event_key(event)
        if event_key and self.store.is_processed(event_key):
            logger.info("Webhook %s already processed", event_key)
            return ReconciliationOutcome.DUPLICATE_EVENT

        if event.kind == PaymentEventKind.OTHER:
            logger.debug("Ignoring %s event %s", event.provider, event.event_type)
            self._mark_event(event, IGNORED_EVENT_TTL_SECONDS)
            return ReconciliationOutcome.IGNORED

        if not event.payment_id:
            logger.warning("%s event %s has no payment id", event.provider, event.event_type)
            self._mark_event(event, IGNORED_EVENT_TTL_SECONDS)
            return ReconciliationOutcome.MISSING_PAYMENT_ID

        if event.kind == PaymentEventKind.SPLIT_UPDATE:
            return self._handle_split_update(db, event)

        return self._handle_confirmation(db, event)

    def _handle_split_update(self, db: Session, event: PaymentEvent) -> ReconciliationOutcome:
        order = find_order_by_payment_id(db, event.payment_id)
        if order is None:
            logger.error("Split update %s for unknown payment %s", event.event_type, event.payment_id)
            self._mark_event(event, WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
            return ReconciliationOutcome.ORDER_NOT_FOUND

        self.notifier.notify_split_update(order, event.event_type)
        self._mark_event(event, WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
        return ReconciliationOutcome.SPLIT_NOTIFIED

    def _mark_reconciled(self, event: PaymentEvent, order_id: int) -> None:
        self._mark_event(event, WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
        self.store.mark_processed(
            payment_confirm_key(event.payment_id),
            WEBHOOK_IDEMPOTENCY_TTL_SECONDS,
            result=order_id,
        )

    def _handle_confirmation(self, db: Session, event: PaymentEvent) -> ReconciliationOutcome:
        payment_id = event.payment_id

        if self.store.is_processed(payment_confirm_key(payment_id)):
            logger.info("Payment %s already reconciled", payment_id)
            self._mark_event(event, WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
            return ReconciliationOutcome.ALREADY_CONFIRMED

        order = find_order_by_payment_id(db, payment_id)
        if order is None:
            logger.error("Payment %s confirmed but no order has it", payment_id)
            self._mark_event(event, WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
            return ReconciliationOutcome.ORDER_NOT_FOUND

        if _payment_recorded(order):
            logger.info("Order %s already paid", order.id)
            self._mark_reconciled(event, order.id)
            return ReconciliationOutcome.ALREADY_PAID

        # End the read transaction before talking to the provider
        db.commit()
        confirmation = call_provider("confirm_payment", self.provider.confirm_payment, payment_id)
        if not confirmation.is_paid:
            logger.warning("Provider reports payment %s as %s; not confirming", payment_id, confirmation.status)
            return ReconciliationOutcome.NOT_PAID

        split = compute_split(order.total_cents, self.fee_percent)
        if confirmation.amount_cents is not None and confirmation.amount_cents != order.total_cents:
            logger.warning(
                "Payment %s amount %s differs from order %s total %s",
                payment_id, confirmation.amount_cents, order.id, order.total_cents,
            )

        changed = recorded = False
        with self.locks.hold(f"order:{order.id}"):
            db.refresh(order)
            if _payment_recorded(order):
                logger.info("Order %s was paid by a concurrent delivery", order.id)
            else:
                try:
                    # False with the payment recorded when the kitchen already started
                    changed = order.confirm_payment(
                        payment_id,
                        split.platform_fee_cents,
                        split.restaurant_amount_cents,
                        paid_at=confirmation.paid_at,
                    )
                except (InvalidTransition, ValidationError) as exc:
                    db.rollback()
                    logger.error("Cannot apply payment %s to order %s: %s", payment_id, order.id, exc)
                    self._mark_event(event, WEBHOOK_IDEMPOTENCY_TTL_SECONDS)
                    return ReconciliationOutcome.NEEDS_ATTENTION

                recorded = True
                try:
                    commit_order(db, order)
                except ConflictError:
                    db.refresh(order)
                    if not _payment_recorded(order):
                        raise
                    logger.info("Order %s was paid by another process", order.id)
                    changed = recorded = False

        if changed:
            self.notifier.notify_payment_confirmed(order)
        elif recorded:
            self.notifier.notify_payment_received(order)

        self._mark_reconciled(event, order.id)
        if recorded:
            logger.info(
                "Payment %s reconciled for order %s (%s): fee=%s restaurant=%s",
                payment_id, order.id, order.status, split.platform_fee_cents, split.restaurant_amount_cents,
            )
            return ReconciliationOutcome.CONFIRMED
        return ReconciliationOutcome.ALREADY_PAID
