from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base, relationship

from .order_lifecycle import OrderLifecycle
from .order_status import OrderStatus

Base = declarative_base()


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    timezone = Column(String, nullable=True)  # IANA name, e.g. "America/Recife"
    opening_hours = Column(JSON, nullable=True)  # see hours.py; NULL = always open

    # Explicit per-restaurant opt-in to send orders to the kitchen before payment
    allow_preparing_before_payment = Column(Boolean, nullable=False, default=False)

    # Shared secret the payment provider sends back on webhooks for this restaurant
    payment_webhook_token = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    menu_items = relationship("MenuItem", back_populates="restaurant", cascade="all, delete-orphan")


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=True, index=True)
    price_cents = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    restaurant = relationship("Restaurant", back_populates="menu_items")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Order(OrderLifecycle, Base):
    """
    A durable order. Mutate it only through the OrderLifecycle methods so the
    replay-safety rules hold; ``version`` makes concurrent writers fail with
    StaleDataError instead of silently overwriting each other.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=OrderStatus.DRAFT.value, index=True)
    total_cents = Column(Integer, nullable=False, default=0)

    payment_method = Column(String, nullable=True)
    payment_link = Column(Text, nullable=True)
    payment_id = Column(String, nullable=True, unique=True)
    platform_fee_cents = Column(Integer, nullable=True)
    restaurant_amount_cents = Column(Integer, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # Human-facing order number, unique per restaurant per local calendar day
    daily_sequence = Column(Integer, nullable=True)
    sequence_date = Column(Date, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    restaurant = relationship("Restaurant")
    customer = relationship("Customer")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("restaurant_id", "sequence_date", "daily_sequence", name="uix_order_daily_sequence"),
        Index("ix_orders_customer_restaurant_status", "customer_id", "restaurant_id", "status"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    # Copied from the menu when the item is added; later price changes do not apply
    unit_price_cents = Column(Integer, nullable=False)
    modifiers = Column(String, nullable=True)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity
