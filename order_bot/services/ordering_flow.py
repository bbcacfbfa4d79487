"""
Ordering Flow
=============

Thin conversation driver on top of the cart, order and payment services.
The messaging adapter calls one method per inbound message and sends back
``FlowReply.text``; everything stateful happens in the services.

Steps:
------
1. ``start``: new cart, list of open restaurants
2. ``select_restaurant``: cart bound to a restaurant, menu shown
3. ``add_items_from_text``: classifier extracts item mentions, each is
   matched against the menu. A mention matching several items parks a
   pending ambiguity and stops; ``resolve_ambiguity`` continues.
4. ``review_order``: summary, waiting for confirmation
5. ``confirm``: CreateOrder with the cart id as idempotency key, so a
   redelivered "confirm" returns the same order.
   From then on the cart is frozen: item changes and reviews are refused
   until the customer cancels.
6. ``choose_payment_method``: payment link
7. ``cancel``: cancels the order (if any) and drops the cart

Business errors (validation, not found, invalid transition, conflict) are
turned into their ``user_message``; nothing here swallows them silently.
"""

import functools
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..errors import OrderBotError, UpstreamUnavailable
from ..models import MenuItem, Order, Restaurant
from ..money import format_money
from ..order_status import OrderStatus
from .cart_session import (
    AmbiguityCandidate,
    CartLine,
    CartSession,
    CartSessionManager,
    CartState,
    PendingAmbiguity,
)
from .conversation import ActiveConversationTracker
from .idempotency import IdempotencyStore
from .intents import IntentClassifier, ItemMention, classify_safely
from .notification import NotificationService
from .order import cancel_order, create_order, format_order_number, get_or_create_customer
from .payment import PaymentMethod, PaymentProvider, request_payment

logger = logging.getLogger(__name__)

HELP_FALLBACK = "Sorry, I didn't get that. Try something like \"2 burgers and a soda\", or type \"help\"."
NO_CART = "You don't have an order in progress. Say \"order\" to start one."
ORDER_PLACED = "Your order #{number} is already placed and can't be changed. Say \"cancel\" to start over."


@dataclass
class FlowReply:
    text: str
    state: Optional[CartState] = None


def _replies_on_error(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except OrderBotError as exc:
            logger.info("%s rejected: %s", method.__name__, exc)
            return FlowReply(exc.user_message)
    return wrapper


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


def match_catalog(menu: List[MenuItem], mention: ItemMention) -> List[MenuItem]:
    """
    Menu items matching a mention: an exact name match wins, otherwise every
    item whose name contains the mention (or vice versa).
    """
    wanted = _normalize(mention.name)
    candidates = menu
    if mention.category:
        category = _normalize(mention.category)
        in_category = [m for m in menu if m.category and _normalize(m.category) == category]
        candidates = in_category or menu

    exact = [m for m in candidates if _normalize(m.name) == wanted]
    if exact:
        return exact[:1]
    return [m for m in candidates if wanted in _normalize(m.name) or _normalize(m.name) in wanted]


class OrderingFlow:
    def __init__(
        self,
        carts: CartSessionManager,
        classifier: IntentClassifier,
        idempotency_store: IdempotencyStore,
        provider: PaymentProvider,
        notifier: NotificationService,
        fee_percent: Decimal,
        tracker: Optional[ActiveConversationTracker] = None,
    ):
        self.carts = carts
        self.classifier = classifier
        self.idempotency_store = idempotency_store
        self.provider = provider
        self.notifier = notifier
        self.fee_percent = fee_percent
        self.tracker = tracker

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _touch(self, phone: str) -> None:
        if self.tracker is not None:
            self.tracker.mark_active(phone)

    @staticmethod
    def _menu(db: Session, restaurant_id: int) -> List[MenuItem]:
        return (
            db.query(MenuItem)
            .filter(MenuItem.restaurant_id == restaurant_id, MenuItem.is_available.is_(True))
            .order_by(MenuItem.id)
            .all()
        )

    @staticmethod
    def _placed(db: Session, session: CartSession) -> Optional[FlowReply]:
        """Reply for edits to a cart whose order was already created, else None."""
        if session.current_order_id is None:
            return None
        order = db.get(Order, session.current_order_id)
        number = format_order_number(order) if order is not None else session.current_order_id
        return FlowReply(ORDER_PLACED.format(number=number), session.state)

    @staticmethod
    def _cart_summary(session: CartSession) -> str:
        lines = [
            f"{i + 1}. {line.quantity}x {line.name} - {format_money(line.line_total_cents)}"
            for i, line in enumerate(session.items)
        ]
        lines.append(f"Total: {format_money(session.total_cents)}")
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @_replies_on_error
    def start(self, db: Session, phone: str) -> FlowReply:
        self.carts.start_order_creation(phone)
        self._touch(phone)
        restaurants = db.query(Restaurant).filter(Restaurant.is_active.is_(True)).order_by(Restaurant.id).all()
        if not restaurants:
            return FlowReply("No restaurants are taking orders right now.", CartState.SELECTING_RESTAURANT)
        options = "\n".join(f"{r.id}. {r.name}" for r in restaurants)
        return FlowReply(f"Where would you like to order from?\n{options}", CartState.SELECTING_RESTAURANT)

    @_replies_on_error
    def select_restaurant(self, db: Session, phone: str, restaurant_id: int) -> FlowReply:
        self._touch(phone)
        restaurant = db.get(Restaurant, restaurant_id)
        if restaurant is None or not restaurant.is_active:
            return FlowReply("That restaurant is not available. Please pick one from the list.")

        session = self.carts.set_restaurant(phone, restaurant.id)
        if session is None:
            return FlowReply(NO_CART)

        menu = self._menu(db, restaurant.id)
        lines = [f"- {item.name}: {format_money(item.price_cents)}" for item in menu]
        return FlowReply(f"{restaurant.name} menu:\n" + "\n".join(lines) + "\nWhat would you like?", session.state)

    @_replies_on_error
    def add_items_from_text(self, db: Session, phone: str, text: str) -> FlowReply:
        self._touch(phone)
        session = self.carts.get_order_data(phone)
        if session is None:
            return FlowReply(NO_CART)
        placed = self._placed(db, session)
        if placed is not None:
            return placed
        if session.restaurant_id is None:
            return FlowReply("Please choose a restaurant first.", session.state)
        if session.pending_ambiguity is not None:
            return self._ambiguity_question(session.pending_ambiguity, session.state)

        menu = self._menu(db, session.restaurant_id)
        try:
            result = classify_safely(
                self.classifier,
                text,
                context={"state": session.state.value},
                catalog=[item.name for item in menu],
            )
        except UpstreamUnavailable:
            return FlowReply(HELP_FALLBACK, session.state)

        validation = result.validation
        if not validation.is_valid:
            return FlowReply("\n".join(validation.errors) or HELP_FALLBACK, session.state)
        if not validation.is_complete:
            missing = ", ".join(validation.missing_required)
            return FlowReply(f"Could you tell me a bit more? Missing: {missing}", session.state)
        if not result.items:
            return FlowReply(HELP_FALLBACK, session.state)

        added, not_found = [], []
        for position, mention in enumerate(result.items):
            matches = match_catalog(menu, mention)
            if not matches:
                not_found.append(mention.name)
                continue

            try:
                if len(matches) > 1:
                    ambiguity = PendingAmbiguity(
                        item_name=mention.name,
                        quantity=mention.quantity,
                        candidates=[
                            AmbiguityCandidate(menu_item_id=m.id, name=m.name, price_cents=m.price_cents)
                            for m in matches
                        ],
                    )
                    session = self.carts.set_pending_ambiguity(phone, ambiguity) or session
                    reply = self._ambiguity_question(ambiguity, session.state)
                    skipped = [m.name for m in result.items[position + 1:]]
                    if skipped:
                        reply.text += "\nAfter that, please send again: " + ", ".join(skipped)
                    return reply

                item = matches[0]
                line = CartLine(
                    menu_item_id=item.id,
                    name=item.name,
                    quantity=mention.quantity,
                    unit_price_cents=item.price_cents,
                )
            except PydanticValidationError:
                return FlowReply(f"Quantity for {mention.name} must be between 1 and 99.", session.state)

            session = self.carts.add_item(phone, line)
            if session is None:
                return FlowReply(NO_CART)
            added.append(f"{line.quantity}x {line.name}")

        parts = []
        if added:
            parts.append("Added: " + ", ".join(added))
        if not_found:
            parts.append("Not on the menu: " + ", ".join(not_found))
        parts.extend(validation.warnings)
        if session.items:
            parts.append(self._cart_summary(session))
        return FlowReply("\n".join(parts), session.state)

    @staticmethod
    def _ambiguity_question(ambiguity: PendingAmbiguity, state: Optional[CartState]) -> FlowReply:
        options = "\n".join(
            f"{i + 1}. {c.name} - {format_money(c.price_cents)}" for i, c in enumerate(ambiguity.candidates)
        )
        return FlowReply(f"Which {ambiguity.item_name} did you mean?\n{options}", state)

    @_replies_on_error
    def resolve_ambiguity(self, db: Session, phone: str, choice: str) -> FlowReply:
        self._touch(phone)
        try:
            index = int(choice.strip()) - 1
        except ValueError:
            return FlowReply("Please reply with the number of your choice.")

        session = self.carts.get_order_data(phone)
        if session is None:
            return FlowReply(NO_CART)
        placed = self._placed(db, session)
        if placed is not None:
            return placed

        session = self.carts.resolve_ambiguity(phone, index)
        if session is None:
            return FlowReply(NO_CART)
        return FlowReply("Got it!\n" + self._cart_summary(session), session.state)

    @_replies_on_error
    def remove_item(self, db: Session, phone: str, position: int) -> FlowReply:
        """Remove the cart line shown as ``position`` (1-based)."""
        self._touch(phone)
        session = self.carts.get_order_data(phone)
        if session is None:
            return FlowReply(NO_CART)
        placed = self._placed(db, session)
        if placed is not None:
            return placed

        session = self.carts.remove_item(phone, position - 1)
        if session is None:
            return FlowReply(NO_CART)
        return FlowReply(self._cart_summary(session), session.state)

    @_replies_on_error
    def review_order(self, db: Session, phone: str) -> FlowReply:
        self._touch(phone)
        session = self.carts.get_order_data(phone)
        if session is None:
            return FlowReply(NO_CART)
        placed = self._placed(db, session)
        if placed is not None:
            return placed
        if not session.items:
            return FlowReply("Your cart is empty. What would you like?", session.state)
        session = self.carts.update_state(phone, CartState.CONFIRMING_ORDER) or session
        return FlowReply(self._cart_summary(session) + "\nConfirm this order? (yes/no)", session.state)

    @_replies_on_error
    def confirm(self, db: Session, phone: str) -> FlowReply:
        self._touch(phone)
        session = self.carts.get_order_data(phone)
        if session is None:
            return FlowReply(NO_CART)
        if not session.items or session.restaurant_id is None:
            return FlowReply("Your cart is empty. What would you like?", session.state)

        customer = get_or_create_customer(db, phone)
        order = create_order(
            db,
            {
                "restaurant_id": session.restaurant_id,
                "customer_id": customer.id,
                "items": [
                    {"menu_item_id": line.menu_item_id, "quantity": line.quantity, "modifiers": line.modifiers}
                    for line in session.items
                ],
                "status": OrderStatus.NEW,
                "idempotency_key": f"cart:{session.cart_id}",
            },
            idempotency_store=self.idempotency_store,
        )

        self.carts.set_current_order_id(phone, order.id)
        session = self.carts.update_state(phone, CartState.AWAITING_PAYMENT_METHOD) or session
        return FlowReply(
            f"Order #{format_order_number(order)} created. Total: {format_money(order.total_cents)}\n"
            "How would you like to pay? (pix/card)",
            session.state,
        )

    @_replies_on_error
    def choose_payment_method(self, db: Session, phone: str, method: str) -> FlowReply:
        self._touch(phone)
        order_id = self.carts.get_current_order_id(phone)
        if order_id is None:
            return FlowReply(NO_CART)

        try:
            payment_method = PaymentMethod(method.strip().lower())
        except ValueError:
            return FlowReply("Please choose pix or card.")

        try:
            result = request_payment(db, order_id, payment_method, self.provider, self.fee_percent)
        except UpstreamUnavailable:
            return FlowReply("We couldn't generate your payment link. Please try again in a moment.")

        session = self.carts.update_state(phone, CartState.AWAITING_PAYMENT)
        text = f"Here is your payment link:\n{result.payment_link}"
        if payment_method == PaymentMethod.PIX and result.qr_code:
            text += f"\nOr scan the QR code:\n{result.qr_code}"
        text += "\nYour order goes to the kitchen as soon as the payment is confirmed."
        return FlowReply(text, session.state if session else None)

    @_replies_on_error
    def cancel(self, db: Session, phone: str) -> FlowReply:
        order_id = self.carts.get_current_order_id(phone)
        if order_id is not None:
            order = cancel_order(db, order_id, provider=self.provider, notifier=self.notifier)
            text = f"Order #{format_order_number(order)} was cancelled."
        else:
            text = "Your order was cancelled."
        self.carts.clear_order_data(phone)
        if self.tracker is not None:
            self.tracker.clear(phone)
        return FlowReply(text, CartState.IDLE)
