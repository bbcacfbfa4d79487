"""
Order status enum and every lookup table keyed by it.

Formatting and notifications read from here so the set of statuses and
their wording is defined exactly once.
"""

from enum import Enum
from typing import Dict


class OrderStatus(str, Enum):
    """Lifecycle status of a persisted order."""
    DRAFT = "draft"
    NEW = "new"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Statuses in which the order is still being built by the customer
EARLY_STATUSES = frozenset({OrderStatus.DRAFT, OrderStatus.NEW})

PAID_OR_LATER = frozenset({
    OrderStatus.PAID,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
})

# Kitchen progress the restaurant drives directly
RESTAURANT_STATUSES = frozenset({OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.DELIVERED})


# Short labels for restaurant-facing listings
STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.DRAFT: "Building",
    OrderStatus.NEW: "New",
    OrderStatus.AWAITING_PAYMENT: "Awaiting payment",
    OrderStatus.PAID: "Paid",
    OrderStatus.PREPARING: "Preparing",
    OrderStatus.READY: "Ready",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

# Customer-facing status change messages; {number} is the order number
CUSTOMER_STATUS_MESSAGES: Dict[OrderStatus, str] = {
    OrderStatus.DRAFT: "Your order #{number} is being put together.",
    OrderStatus.NEW: "Your order #{number} was created.",
    OrderStatus.AWAITING_PAYMENT: "Your order #{number} is awaiting payment.",
    OrderStatus.PAID: "Your order #{number} is confirmed!",
    OrderStatus.PREPARING: "Your order #{number} is being prepared. It will be ready soon.",
    OrderStatus.READY: "Your order #{number} is ready for pickup! Thank you!",
    OrderStatus.DELIVERED: "Your order #{number} was delivered.",
    OrderStatus.CANCELLED: "Your order #{number} was cancelled.",
}


def status_label(status: OrderStatus) -> str:
    return STATUS_LABELS[OrderStatus(status)]


def customer_status_message(status: OrderStatus, number: str) -> str:
    template = CUSTOMER_STATUS_MESSAGES.get(OrderStatus(status), "Your order #{number} changed status.")
    return template.format(number=number)

