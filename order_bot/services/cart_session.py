"""
Cart Session Manager
====================

Per-customer ephemeral state for the multi-step ordering conversation,
keyed by the customer's phone number. A cart lives only until it is
finalized, cancelled or left idle for CART_SESSION_TTL_SECONDS.

Conversation States:
--------------------
    IDLE -> SELECTING_RESTAURANT -> VIEWING_MENU -> ADDING_ITEMS
         -> (RESOLVING_AMBIGUITY <-> ADDING_ITEMS) -> CONFIRMING_ORDER
         -> AWAITING_PAYMENT_METHOD -> AWAITING_PAYMENT

Rules the manager enforces:
---------------------------
1. Sessions are created only by ``start_order_creation``. Every other mutator
   returns None and writes nothing when the session does not exist (for
   example because it expired).

2. The running total is recomputed from the line totals on every change,
   never accumulated.

3. ``remove_item`` with an out-of-range index raises ValidationError.

4. At most one pending ambiguity per cart. Setting a second, different one
   while the first is unresolved raises AmbiguityPending; re-setting the same
   one (a redelivered message) is a no-op.

Storage:
--------
Sessions are serialized as JSON into a KeyValueStore. Each mutation is a
single atomic read-modify-write of that key (``KeyValueStore.update``), so two
deliveries of the same message cannot interleave and lose an item. The TTL is
refreshed on every write, which makes expiry an idle timeout.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field, computed_field

from ..config import CART_SESSION_TTL_SECONDS, MAX_ITEM_QUANTITY, SESSION_STORAGE
from ..errors import AmbiguityPending, ValidationError
from .kv_store import KeyValueStore, create_kv_store

logger = logging.getLogger(__name__)


class CartState(str, Enum):
    IDLE = "IDLE"
    SELECTING_RESTAURANT = "SELECTING_RESTAURANT"
    VIEWING_MENU = "VIEWING_MENU"
    ADDING_ITEMS = "ADDING_ITEMS"
    RESOLVING_AMBIGUITY = "RESOLVING_AMBIGUITY"
    CONFIRMING_ORDER = "CONFIRMING_ORDER"
    AWAITING_PAYMENT_METHOD = "AWAITING_PAYMENT_METHOD"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"


class CartLine(BaseModel):
    """One pending line, with name and price snapshotted from the catalog."""

    menu_item_id: int
    name: str
    quantity: int = Field(ge=1, le=MAX_ITEM_QUANTITY)
    unit_price_cents: int = Field(ge=0)
    modifiers: Optional[str] = None

    @computed_field
    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class AmbiguityCandidate(BaseModel):
    menu_item_id: int
    name: str
    price_cents: int


class PendingAmbiguity(BaseModel):
    """A phrase that matched several catalog items and awaits a choice."""

    item_name: str
    quantity: int = Field(ge=1, le=MAX_ITEM_QUANTITY)
    candidates: List[AmbiguityCandidate] = Field(min_length=1)


class CartSession(BaseModel):
    phone: str
    cart_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    state: CartState = CartState.SELECTING_RESTAURANT
    restaurant_id: Optional[int] = None
    items: List[CartLine] = Field(default_factory=list)
    total_cents: int = 0
    pending_ambiguity: Optional[PendingAmbiguity] = None
    current_order_id: Optional[int] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def recalculate_total(self) -> int:
        self.total_cents = sum(line.line_total_cents for line in self.items)
        return self.total_cents


Mutation = Callable[[CartSession], None]


class CartSessionManager:
    """
    Cart session operations over a KeyValueStore.

    Args:
        kv: Backing store (memory or Redis)
        ttl_seconds: Idle expiry for a cart
    """

    def __init__(self, kv: KeyValueStore, ttl_seconds: int = CART_SESSION_TTL_SECONDS):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(phone: str) -> str:
        return f"cart:{phone}"

    def _mutate(self, phone: str, mutation: Mutation) -> Optional[CartSession]:
        """Apply ``mutation`` atomically; None if there is no session."""
        result: List[CartSession] = []

        def _updater(raw: str) -> str:
            session = CartSession.model_validate_json(raw)
            mutation(session)
            result.append(session)
            return session.model_dump_json()

        if self.kv.update(self._key(phone), _updater, self.ttl_seconds) is None:
            logger.debug("No cart session for %s; mutation skipped", phone)
            return None
        return result[-1]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_order_creation(self, phone: str) -> CartSession:
        """Start a fresh cart, replacing any existing one."""
        session = CartSession(phone=phone)
        self.kv.set(self._key(phone), session.model_dump_json(), self.ttl_seconds)
        logger.info("Started cart %s for %s", session.cart_id, phone)
        return session

    def get_order_data(self, phone: str) -> Optional[CartSession]:
        raw = self.kv.get(self._key(phone))
        if raw is None:
            return None
        return CartSession.model_validate_json(raw)

    def clear_order_data(self, phone: str) -> None:
        self.kv.delete(self._key(phone))

    # -------------------------------------------------------------------------
    # State & restaurant
    # -------------------------------------------------------------------------

    def set_restaurant(self, phone: str, restaurant_id: int) -> Optional[CartSession]:
        def _apply(session: CartSession) -> None:
            session.restaurant_id = restaurant_id
            session.state = CartState.VIEWING_MENU

        return self._mutate(phone, _apply)

    def update_state(self, phone: str, state: CartState) -> Optional[CartSession]:
        state = CartState(state)

        def _apply(session: CartSession) -> None:
            session.state = state

        return self._mutate(phone, _apply)

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def add_item(self, phone: str, line: CartLine) -> Optional[CartSession]:
        def _apply(session: CartSession) -> None:
            session.items.append(line)
            session.recalculate_total()
            session.state = CartState.ADDING_ITEMS

        return self._mutate(phone, _apply)

    def remove_item(self, phone: str, index: int) -> Optional[CartSession]:
        """
        Remove the line at ``index``.

        Raises:
            ValidationError: ``index`` is outside the current item list
        """
        def _apply(session: CartSession) -> None:
            if index < 0 or index >= len(session.items):
                raise ValidationError(
                    f"Item index {index} out of range for cart with {len(session.items)} items",
                    user_message="That item is not in your cart.",
                )
            session.items.pop(index)
            session.recalculate_total()

        return self._mutate(phone, _apply)

    def calculate_total(self, phone: str) -> int:
        session = self.get_order_data(phone)
        if session is None:
            return 0
        return sum(line.line_total_cents for line in session.items)

    # -------------------------------------------------------------------------
    # Ambiguity resolution
    # -------------------------------------------------------------------------

    def set_pending_ambiguity(self, phone: str, ambiguity: PendingAmbiguity) -> Optional[CartSession]:
        """
        Park an ambiguous item until the customer picks a candidate.

        Raises:
            AmbiguityPending: A different ambiguity is still unresolved
        """
        def _apply(session: CartSession) -> None:
            pending = session.pending_ambiguity
            if pending is not None and pending != ambiguity:
                raise AmbiguityPending(
                    f"Cart {session.cart_id} already waiting on '{pending.item_name}'",
                    user_message=f"Let's finish choosing your {pending.item_name} first.",
                )
            session.pending_ambiguity = ambiguity
            session.state = CartState.RESOLVING_AMBIGUITY

        return self._mutate(phone, _apply)

    def get_pending_ambiguity(self, phone: str) -> Optional[PendingAmbiguity]:
        session = self.get_order_data(phone)
        return session.pending_ambiguity if session else None

    def resolve_ambiguity(self, phone: str, choice_index: int) -> Optional[CartSession]:
        """
        Add the chosen candidate as a normal line and clear the ambiguity.

        Raises:
            ValidationError: Nothing is pending, or the choice is out of range
        """
        def _apply(session: CartSession) -> None:
            pending = session.pending_ambiguity
            if pending is None:
                raise ValidationError("No pending ambiguity to resolve", user_message="There is nothing to choose right now.")
            if choice_index < 0 or choice_index >= len(pending.candidates):
                raise ValidationError(
                    f"Choice {choice_index} out of range for {len(pending.candidates)} candidates",
                    user_message=f"Please choose a number between 1 and {len(pending.candidates)}.",
                )
            chosen = pending.candidates[choice_index]
            session.items.append(CartLine(
                menu_item_id=chosen.menu_item_id,
                name=chosen.name,
                quantity=pending.quantity,
                unit_price_cents=chosen.price_cents,
            ))
            session.recalculate_total()
            session.pending_ambiguity = None
            session.state = CartState.ADDING_ITEMS

        return self._mutate(phone, _apply)

    def clear_pending_ambiguity(self, phone: str) -> Optional[CartSession]:
        def _apply(session: CartSession) -> None:
            session.pending_ambiguity = None
            if session.state == CartState.RESOLVING_AMBIGUITY:
                session.state = CartState.ADDING_ITEMS

        return self._mutate(phone, _apply)

    # -------------------------------------------------------------------------
    # Created order
    # -------------------------------------------------------------------------

    def set_current_order_id(self, phone: str, order_id: int) -> Optional[CartSession]:
        def _apply(session: CartSession) -> None:
            session.current_order_id = order_id

        return self._mutate(phone, _apply)

    def get_current_order_id(self, phone: str) -> Optional[int]:
        session = self.get_order_data(phone)
        return session.current_order_id if session else None


def create_cart_session_manager(backend: Optional[str] = None) -> CartSessionManager:
    """Build the manager for SESSION_STORAGE (or ``backend``)."""
    kv = create_kv_store(backend or SESSION_STORAGE, namespace="order")
    return CartSessionManager(kv)
