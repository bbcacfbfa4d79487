from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_bot.models import Base, Customer, MenuItem, Restaurant
from order_bot.services.idempotency import IdempotencyStore
from order_bot.services.intents import IntentClassifier, IntentResult
from order_bot.services.kv_store import InMemoryKeyValueStore
from order_bot.services.notification import MessageSender, NotificationService
from order_bot.services.order import create_order
from order_bot.services.payment import (
    PaymentConfirmation,
    PaymentIntent,
    PaymentProvider,
    request_payment,
)

# Friday 2024-05-10 12:00 in America/Recife
NOON = datetime(2024, 5, 10, 15, 0, tzinfo=timezone.utc)

FEE_PERCENT = Decimal("5")


# =============================================================================
# Fakes for external collaborators
# =============================================================================

class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(PaymentProvider):
    name = "fake"

    def __init__(self):
        self.created = []
        self.confirmed = []
        self.cancelled = []
        self.confirm_status = "paid"
        self.confirm_amount_cents = None
        self.fail_create = False
        self.fail_confirm = False
        self.on_confirm = None

    def create_payment(self, order_id, amount_cents, method, split, description=None):
        if self.fail_create:
            raise RuntimeError("provider timeout")
        self.created.append((order_id, amount_cents, method, split))
        return PaymentIntent(
            payment_id=f"pay_{order_id}",
            payment_link=f"https://pay.example/{order_id}",
            qr_code="QR-DATA",
        )

    def confirm_payment(self, payment_id):
        if self.fail_confirm:
            raise RuntimeError("provider timeout")
        self.confirmed.append(payment_id)
        if self.on_confirm is not None:
            self.on_confirm(payment_id)
        return PaymentConfirmation(
            payment_id=payment_id,
            status=self.confirm_status,
            amount_cents=self.confirm_amount_cents,
        )

    def cancel_payment(self, payment_id):
        self.cancelled.append(payment_id)
        return True


class FakeSender(MessageSender):
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_message(self, to, text):
        if self.fail:
            raise ConnectionError("channel down")
        self.sent.append((to, text))

    def texts_to(self, phone):
        return [text for to, text in self.sent if to == phone]


class FakeClassifier(IntentClassifier):
    def __init__(self):
        self.result = IntentResult()
        self.error = None
        self.calls = []

    def classify(self, text, context=None, catalog=None, rules=None):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.result


# =============================================================================
# Database fixtures
# =============================================================================

@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session through StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def restaurant(db_session):
    restaurant = Restaurant(
        name="Burger Place",
        phone="5581900000001",
        is_active=True,
        timezone="America/Recife",
        opening_hours=None,
        payment_webhook_token="webhook-secret",
    )
    db_session.add(restaurant)
    db_session.flush()
    db_session.add_all([
        MenuItem(restaurant_id=restaurant.id, name="Burger", category="burgers", price_cents=2000),
        MenuItem(restaurant_id=restaurant.id, name="Soda", category="drinks", price_cents=500),
        MenuItem(restaurant_id=restaurant.id, name="Pizza Margherita", category="pizza", price_cents=3000),
        MenuItem(restaurant_id=restaurant.id, name="Pizza Pepperoni", category="pizza", price_cents=3500),
        MenuItem(restaurant_id=restaurant.id, name="Milkshake", category="drinks", price_cents=1200, is_available=False),
    ])
    db_session.commit()
    return restaurant


@pytest.fixture
def menu(db_session, restaurant):
    """Menu items by name."""
    items = db_session.query(MenuItem).filter(MenuItem.restaurant_id == restaurant.id).all()
    return {item.name: item for item in items}


@pytest.fixture
def customer(db_session):
    customer = Customer(phone="5581988887777", name="Ana")
    db_session.add(customer)
    db_session.commit()
    return customer


# =============================================================================
# Service fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def idempotency_store():
    return IdempotencyStore(InMemoryKeyValueStore())


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def notifier(sender):
    return NotificationService(sender)


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def new_order(db_session, restaurant, customer, menu):
    """2x Burger, status NEW, total 4000."""
    return create_order(
        db_session,
        {
            "restaurant_id": restaurant.id,
            "customer_id": customer.id,
            "items": [{"menu_item_id": menu["Burger"].id, "quantity": 2}],
            "status": "new",
        },
        now=NOON,
    )


@pytest.fixture
def awaiting_order(db_session, new_order, provider):
    """``new_order`` with a pix payment link; payment id is pay_<order id>."""
    result = request_payment(db_session, new_order.id, "pix", provider, FEE_PERCENT, now=NOON)
    return result.order
