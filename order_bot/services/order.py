"""
Order Service
=============

Turns a finished cart into a persisted Order and handles the later edits
and restaurant-side status changes.

Key Functions:
--------------
- create_order: Idempotent CreateOrder (cart -> Order + OrderItems)
- add_item_to_order / remove_item_from_order: Edits while the order is
  still modifiable (DRAFT/NEW)
- advance_order_status: Restaurant-side PREPARING -> READY -> DELIVERED
- cancel_order: Customer or restaurant cancellation
- format_order_number: Human-facing order number

CreateOrder Algorithm:
----------------------
1. With an idempotency key, a recorded result is returned if that order is
   still DRAFT/NEW. If the recorded order moved on (or vanished), the
   customer's open order at the same restaurant is returned instead.
   Concurrent first attempts are serialized by a short lease; the loser
   waits for the winner's result rather than creating a second order.
2. The restaurant must exist, be active and be open in its own timezone.
3. Every item must exist at this restaurant and be available. One bad item
   rejects the whole order.
4. Unit prices are snapshotted; the total is the integer sum of line totals.
5. Order, items and (for NEW orders) the daily sequence number are written in
   ONE transaction. A unique constraint on (restaurant, date, sequence) turns
   a concurrent duplicate number into an IntegrityError, and the whole
   transaction is retried with the next number.
6. The key -> order id mapping is recorded for ORDER_IDEMPOTENCY_TTL_SECONDS.

Nothing is written when any validation fails.
"""

import logging
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    Retrying,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
    wait_random,
)

from ..config import (
    CREATE_LEASE_TTL_SECONDS,
    MAX_ITEM_QUANTITY,
    ORDER_IDEMPOTENCY_TTL_SECONDS,
    SEQUENCE_RETRY_ATTEMPTS,
)
from ..errors import (
    ConflictError,
    InternalError,
    InvalidTransition,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)
from ..hours import is_open_at, local_date, utcnow
from ..models import Customer, MenuItem, Order, OrderItem, Restaurant
from ..order_state_machine import OrderStateMachine
from ..order_status import EARLY_STATUSES, RESTAURANT_STATUSES, OrderStatus
from .idempotency import IdempotencyStore, order_create_key

if TYPE_CHECKING:
    from .notification import NotificationService
    from .payment import PaymentProvider

logger = logging.getLogger(__name__)

# Statuses in which a customer's order at a restaurant still counts as "open"
OPEN_STATUSES = (OrderStatus.DRAFT, OrderStatus.NEW, OrderStatus.AWAITING_PAYMENT)

# How long a duplicate request waits for the first attempt to finish
LEASE_WAIT_ATTEMPTS = 10
LEASE_WAIT_SECONDS = 0.2


# =============================================================================
# Input
# =============================================================================

class OrderLineInput(BaseModel):
    menu_item_id: int
    quantity: int = Field(ge=1, le=MAX_ITEM_QUANTITY)
    modifiers: Optional[str] = None


class CreateOrderInput(BaseModel):
    restaurant_id: int
    customer_id: int
    items: List[OrderLineInput] = Field(min_length=1)
    status: OrderStatus = OrderStatus.DRAFT
    idempotency_key: Optional[str] = None

    @field_validator("status")
    @classmethod
    def initial_status_only(cls, value: OrderStatus) -> OrderStatus:
        if value not in EARLY_STATUSES:
            raise ValueError("orders are created as draft or new")
        return value


def validate_order_input(data) -> CreateOrderInput:
    """
    Validate raw create-order input.

    Raises:
        ValidationError: With one message per invalid field
    """
    if isinstance(data, CreateOrderInput):
        return data
    try:
        return CreateOrderInput.model_validate(data)
    except PydanticValidationError as exc:
        messages = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValidationError(
            "Invalid order: " + "; ".join(messages),
            errors=messages,
            user_message="Your order has invalid items. Each item needs a quantity between 1 and 99.",
        ) from exc


# =============================================================================
# Lookups
# =============================================================================

def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def find_order_by_payment_id(db: Session, payment_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.payment_id == payment_id).first()


def find_open_order(db: Session, customer_id: int, restaurant_id: int) -> Optional[Order]:
    """Most recent DRAFT/NEW/AWAITING_PAYMENT order of a customer at a restaurant."""
    return (
        db.query(Order)
        .filter(
            Order.customer_id == customer_id,
            Order.restaurant_id == restaurant_id,
            Order.status.in_([s.value for s in OPEN_STATUSES]),
        )
        .order_by(Order.id.desc())
        .first()
    )


def get_or_create_customer(db: Session, phone: str, name: Optional[str] = None) -> Customer:
    customer = db.query(Customer).filter(Customer.phone == phone).first()
    if customer:
        return customer

    customer = Customer(phone=phone, name=name)
    db.add(customer)
    try:
        db.commit()
    except IntegrityError:
        # Another message from the same phone created it first
        db.rollback()
        return db.query(Customer).filter(Customer.phone == phone).one()
    logger.info("Created customer %s for %s", customer.id, phone)
    return customer


def format_order_number(order: Order) -> str:
    """Daily sequence zero-padded to three digits, or the id if none was assigned."""
    if order.daily_sequence:
        return f"{order.daily_sequence:03d}"
    return str(order.id)


def _load_open_restaurant(db: Session, restaurant_id: int, now: datetime) -> Restaurant:
    restaurant = db.get(Restaurant, restaurant_id)
    if restaurant is None or not restaurant.is_active:
        raise NotFoundError(
            "Restaurant", restaurant_id,
            user_message="This restaurant is not available.",
        )
    if not is_open_at(restaurant.opening_hours, restaurant.timezone, now):
        raise ValidationError(
            f"Restaurant {restaurant_id} is closed",
            user_message=f"Sorry, {restaurant.name} is closed right now.",
        )
    return restaurant


def _load_available_item(db: Session, restaurant: Restaurant, menu_item_id: int) -> MenuItem:
    menu_item = db.get(MenuItem, menu_item_id)
    if menu_item is None or menu_item.restaurant_id != restaurant.id:
        raise NotFoundError(
            "Menu item", menu_item_id,
            user_message="One of the items is not on this restaurant's menu.",
        )
    if not menu_item.is_available:
        raise ValidationError(
            f"Menu item {menu_item_id} is not available",
            user_message=f"Sorry, {menu_item.name} is not available right now.",
        )
    return menu_item


# =============================================================================
# Daily sequence & commit helpers
# =============================================================================

def _assign_daily_sequence(db: Session, order: Order, restaurant: Restaurant, now: datetime) -> None:
    """Next number after today's max for the restaurant, in its local calendar day."""
    sequence_date = local_date(now, restaurant.timezone)
    current_max = (
        db.query(func.max(Order.daily_sequence))
        .filter(
            Order.restaurant_id == restaurant.id,
            Order.sequence_date == sequence_date,
        )
        .scalar()
    )
    order.sequence_date = sequence_date
    order.daily_sequence = (current_max or 0) + 1


def commit_order(db: Session, order: Order) -> None:
    """
    Commit, translating storage failures.

    IntegrityError is re-raised as-is so sequence collisions can be retried.
    """
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(
            f"Order {order.id} was modified concurrently",
            user_message="Your order was just updated. Please try again.",
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to persist order %s", order.id)
        raise InternalError(f"Failed to persist order {order.id}") from exc


def _with_sequence_retry(operation, *args):
    """Run ``operation`` again when its commit collides on the daily sequence."""
    retrying = Retrying(
        stop=stop_after_attempt(SEQUENCE_RETRY_ATTEMPTS),
        wait=wait_random(0, 0.05),
        retry=retry_if_exception_type(IntegrityError),
        reraise=True,
    )
    try:
        return retrying(operation, *args)
    except IntegrityError as exc:
        logger.error("Daily sequence still colliding after %d attempts", SEQUENCE_RETRY_ATTEMPTS)
        raise InternalError("Could not assign a daily order number") from exc


# =============================================================================
# CreateOrder
# =============================================================================

def _create_order_once(db: Session, order_input: CreateOrderInput, now: datetime) -> Order:
    restaurant = _load_open_restaurant(db, order_input.restaurant_id, now)

    if db.get(Customer, order_input.customer_id) is None:
        raise NotFoundError("Customer", order_input.customer_id)

    menu_items = [_load_available_item(db, restaurant, line.menu_item_id) for line in order_input.items]

    order = Order(
        restaurant_id=restaurant.id,
        customer_id=order_input.customer_id,
        status=order_input.status.value,
        total_cents=0,
    )
    for line, menu_item in zip(order_input.items, menu_items):
        order.items.append(OrderItem(
            menu_item_id=menu_item.id,
            quantity=line.quantity,
            unit_price_cents=menu_item.price_cents,
            modifiers=line.modifiers,
        ))
    order.total_cents = sum(item.line_total_cents for item in order.items)

    if order_input.status == OrderStatus.NEW:
        _assign_daily_sequence(db, order, restaurant, now)

    db.add(order)
    commit_order(db, order)

    logger.info(
        "Created order %s for customer %s at restaurant %s: status=%s total=%s sequence=%s",
        order.id, order.customer_id, order.restaurant_id, order.status,
        order.total_cents, order.daily_sequence,
    )
    return order


def _replay(db: Session, order_input: CreateOrderInput, store: IdempotencyStore, key: str) -> Optional[Order]:
    """Return the order a previous attempt with this key created, if still usable."""
    if not store.is_processed(key):
        return None

    cached_id = store.get_result(key)
    if cached_id is not None:
        order = db.get(Order, int(cached_id))
        if order is not None and order.status_enum in EARLY_STATUSES:
            logger.info("Idempotent replay of %s returned order %s", key, order.id)
            return order

    order = find_open_order(db, order_input.customer_id, order_input.restaurant_id)
    if order is not None:
        logger.info("Idempotent replay of %s recovered open order %s", key, order.id)
        _record_result(store, key, order.id)
    return order


def _record_result(store: IdempotencyStore, key: str, order_id: int) -> None:
    try:
        store.store_result(key, order_id, ORDER_IDEMPOTENCY_TTL_SECONDS)
    except StoreUnavailable as exc:
        # The order is committed; a retry falls back to find_open_order
        logger.error("Could not record idempotency key %s for order %s: %s", key, order_id, exc)


@retry(
    stop=stop_after_attempt(LEASE_WAIT_ATTEMPTS),
    wait=wait_fixed(LEASE_WAIT_SECONDS),
    retry=retry_if_result(lambda order: order is None),
    retry_error_callback=lambda retry_state: None,
)
def _wait_for_first_attempt(db: Session, order_input: CreateOrderInput, store: IdempotencyStore, key: str):
    return _replay(db, order_input, store, key)


def create_order(
    db: Session,
    order_input,
    idempotency_store: Optional[IdempotencyStore] = None,
    now: Optional[datetime] = None,
) -> Order:
    """
    Create an order from a finished cart.

    Args:
        db: Database session
        order_input: CreateOrderInput or an equivalent dict
        idempotency_store: Enables replay protection when the input has an
            idempotency key
        now: Point in time used for the opening-hours check and the daily
            sequence date (defaults to the current UTC time)

    Returns:
        The created Order, or the previously created one on replay

    Raises:
        ValidationError: Bad input, restaurant closed, item unavailable
        NotFoundError: Restaurant, customer or menu item missing
        ConflictError: Another attempt with the same key is still running
        InternalError: The order could not be persisted
    """
    order_input = validate_order_input(order_input)
    now = now or utcnow()

    if not (order_input.idempotency_key and idempotency_store):
        return _with_sequence_retry(_create_order_once, db, order_input, now)

    store = idempotency_store
    key = order_create_key(order_input.idempotency_key)

    existing = _replay(db, order_input, store, key)
    if existing is not None:
        return existing

    lease_key = f"{key}:lease"
    try:
        won_lease = store.claim(lease_key, CREATE_LEASE_TTL_SECONDS)
    except StoreUnavailable as exc:
        logger.warning("Could not take lease %s, creating without it: %s", lease_key, exc)
        lease_key = None
        won_lease = True

    if not won_lease:
        logger.info("Order creation for %s already in progress; waiting", key)
        existing = _wait_for_first_attempt(db, order_input, store, key)
        if existing is not None:
            return existing
        raise ConflictError(
            f"Order creation for {key} still in progress",
            user_message="We're still creating your order. Please wait a moment.",
        )

    try:
        # A first attempt may have finished between the replay check and the lease
        existing = _replay(db, order_input, store, key)
        if existing is not None:
            return existing
        order = _with_sequence_retry(_create_order_once, db, order_input, now)
        _record_result(store, key, order.id)
        return order
    finally:
        if lease_key:
            store.release(lease_key)


# =============================================================================
# Edits
# =============================================================================

def _add_item_once(
    db: Session,
    order_id: int,
    menu_item_id: int,
    quantity: int,
    modifiers: Optional[str],
    now: datetime,
) -> Order:
    order = get_order(db, order_id)
    OrderStateMachine.assert_can_modify(order.status_enum)

    if quantity < 1 or quantity > MAX_ITEM_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {MAX_ITEM_QUANTITY}")

    restaurant = order.restaurant
    menu_item = _load_available_item(db, restaurant, menu_item_id)
    order.items.append(OrderItem(
        menu_item_id=menu_item.id,
        quantity=quantity,
        unit_price_cents=menu_item.price_cents,
        modifiers=modifiers,
    ))
    order.recalculate_total()

    if order.status_enum == OrderStatus.DRAFT:
        # A draft with items becomes a real order and gets its number
        _assign_daily_sequence(db, order, restaurant, now)
        order.update_status(OrderStatus.NEW)

    commit_order(db, order)
    logger.info("Added %s x menu item %s to order %s", quantity, menu_item_id, order.id)
    return order


def add_item_to_order(
    db: Session,
    order_id: int,
    menu_item_id: int,
    quantity: int,
    modifiers: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """
    Add an item to a DRAFT/NEW order. A DRAFT order is promoted to NEW.

    Raises:
        InvalidTransition: The order can no longer be modified
        NotFoundError / ValidationError: Item missing or unavailable
    """
    return _with_sequence_retry(_add_item_once, db, order_id, menu_item_id, quantity, modifiers, now or utcnow())


def remove_item_from_order(db: Session, order_id: int, order_item_id: int) -> Order:
    """
    Remove one line from a DRAFT/NEW order.

    Raises:
        InvalidTransition: The order can no longer be modified
        NotFoundError: The line does not belong to the order
        ValidationError: It is the last line of a NEW order
    """
    order = get_order(db, order_id)
    OrderStateMachine.assert_can_modify(order.status_enum)

    item = next((i for i in order.items if i.id == order_item_id), None)
    if item is None:
        raise NotFoundError("Order item", order_item_id)

    if order.status_enum == OrderStatus.NEW and len(order.items) == 1:
        raise ValidationError(
            f"Cannot remove the last item of order {order.id}",
            user_message="An order needs at least one item. Cancel the order instead.",
        )

    order.items.remove(item)
    order.recalculate_total()
    commit_order(db, order)
    logger.info("Removed item %s from order %s", order_item_id, order.id)
    return order


# =============================================================================
# Status changes
# =============================================================================

def advance_order_status(
    db: Session,
    order_id: int,
    new_status: OrderStatus,
    notifier: Optional["NotificationService"] = None,
) -> Order:
    """
    Apply a restaurant-side status change (PREPARING, READY, DELIVERED).

    Preparing before payment is only allowed for restaurants that opted in
    via ``allow_preparing_before_payment``.

    Raises:
        InvalidTransition: Any other target, or a move the order cannot make
    """
    new_status = OrderStatus(new_status)
    order = get_order(db, order_id)
    if new_status not in RESTAURANT_STATUSES:
        raise InvalidTransition(
            order.status_enum, new_status,
            "Restaurants can only move orders to preparing, ready or delivered",
        )
    allow_early = bool(order.restaurant and order.restaurant.allow_preparing_before_payment)

    changed = order.update_status(new_status, allow_preparing_before_payment=allow_early)
    if not changed:
        return order

    commit_order(db, order)
    logger.info("Order %s moved to %s", order.id, new_status.value)
    if notifier is not None:
        notifier.notify_order_status_changed(order, new_status)
    return order


def cancel_order(
    db: Session,
    order_id: int,
    provider: Optional["PaymentProvider"] = None,
    notifier: Optional["NotificationService"] = None,
) -> Order:
    """
    Cancel an order. A pending provider payment is cancelled best-effort.

    Raises:
        OrderNotCancellable: Paid, in preparation, ready or delivered
    """
    order = get_order(db, order_id)
    if not order.cancel():
        return order

    commit_order(db, order)
    logger.info("Order %s cancelled", order.id)

    if order.payment_id and provider is not None:
        try:
            if not provider.cancel_payment(order.payment_id):
                logger.warning("Provider refused to cancel payment %s", order.payment_id)
        except Exception:
            logger.exception("Failed to cancel payment %s for order %s", order.payment_id, order.id)

    if notifier is not None:
        notifier.notify_order_cancelled(order)
    return order
