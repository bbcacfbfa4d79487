"""
Notification Service
====================

Best-effort messages to customers and restaurants through the messaging
channel. A failed send is logged and swallowed: it must never roll back an
order change that is already committed.

Wording for status changes comes from order_status.py so every channel says
the same thing.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..models import Order
from ..money import format_money
from ..order_status import OrderStatus, customer_status_message, status_label
from .order import format_order_number

logger = logging.getLogger(__name__)


class MessageSender(ABC):
    """Channel adapter (WhatsApp, SMS, ...). Sends plain text."""

    @abstractmethod
    def send_message(self, to: str, text: str) -> None:
        """Deliver ``text`` to the phone number ``to``."""


# Split payout updates from the provider; {number} is the order number
SPLIT_CUSTOMER_MESSAGES: Dict[str, str] = {
    "PAYMENT_SPLIT_DONE": "Payment confirmed and settled for order #{number}.",
    "PAYMENT_SPLIT_REFUSED": "The payout for order #{number} was refused. Our team will look into it.",
    "PAYMENT_SPLIT_CANCELLED": "The payout for order #{number} was cancelled.",
    "PAYMENT_SPLIT_REFUNDED": "The payment for order #{number} was refunded.",
    "PAYMENT_SPLIT_DIVERGENCE_BLOCK": "The payment for order #{number} is on hold while we check the payout.",
    "PAYMENT_SPLIT_DIVERGENCE_BLOCK_FINISHED": "The hold on the payment for order #{number} was released.",
}

SPLIT_RESTAURANT_MESSAGES: Dict[str, str] = {
    "PAYMENT_SPLIT_DONE": "Split completed for order #{number}. Payout released.",
    "PAYMENT_SPLIT_REFUSED": "Split refused for order #{number}. Check your payment account.",
    "PAYMENT_SPLIT_CANCELLED": "Split cancelled for order #{number}.",
    "PAYMENT_SPLIT_REFUNDED": "Split refunded for order #{number}.",
    "PAYMENT_SPLIT_DIVERGENCE_BLOCK": "Split blocked for order #{number} due to an amount divergence.",
    "PAYMENT_SPLIT_DIVERGENCE_BLOCK_FINISHED": "Split block resolved for order #{number}.",
}


class NotificationService:
    def __init__(self, sender: MessageSender):
        self.sender = sender

    def _send(self, to: Optional[str], text: str, audience: str, order: Order) -> bool:
        if not to:
            logger.warning("No %s phone for order %s; notification skipped", audience, order.id)
            return False
        try:
            self.sender.send_message(to, text)
        except Exception:
            logger.exception("Failed to notify %s for order %s", audience, order.id)
            return False
        logger.info("Notified %s for order %s", audience, order.id)
        return True

    def notify_customer(self, order: Order, text: str) -> bool:
        phone = order.customer.phone if order.customer else None
        return self._send(phone, text, "customer", order)

    def notify_restaurant(self, order: Order, text: str) -> bool:
        phone = order.restaurant.phone if order.restaurant else None
        return self._send(phone, text, "restaurant", order)

    def notify_order_created(self, order: Order) -> bool:
        """Kitchen ticket for the restaurant."""
        lines = [f"New order #{format_order_number(order)}"]
        for item in order.items:
            name = item.menu_item.name if item.menu_item else f"item {item.menu_item_id}"
            line = f"{item.quantity}x {name}"
            if item.modifiers:
                line += f" ({item.modifiers})"
            lines.append(line)
        lines.append(f"Total: {format_money(order.total_cents)}")
        return self.notify_restaurant(order, "\n".join(lines))

    def notify_order_status_changed(self, order: Order, new_status: OrderStatus) -> bool:
        text = customer_status_message(new_status, format_order_number(order))
        return self.notify_customer(order, text)

    def notify_order_cancelled(self, order: Order) -> None:
        self.notify_order_status_changed(order, OrderStatus.CANCELLED)
        self.notify_restaurant(order, f"Order #{format_order_number(order)} was cancelled.")

    def notify_payment_confirmed(self, order: Order) -> None:
        """Send the kitchen ticket and tell the customer the order is confirmed."""
        self.notify_order_created(order)
        self.notify_order_status_changed(order, OrderStatus.PAID)
        self.notify_restaurant(order, f"Payment confirmed for order #{format_order_number(order)}.")

    def notify_payment_received(self, order: Order) -> None:
        """Payment for an order the kitchen already has; no second ticket."""
        number = format_order_number(order)
        self.notify_customer(order, f"Payment received for order #{number}. Thank you!")
        self.notify_restaurant(order, f"Payment confirmed for order #{number} ({status_label(order.status_enum)}).")

    def notify_split_update(self, order: Order, event_type: str) -> None:
        number = format_order_number(order)
        customer_text = SPLIT_CUSTOMER_MESSAGES.get(event_type, "Payment update for order #{number}.")
        restaurant_text = SPLIT_RESTAURANT_MESSAGES.get(event_type, "Split update for order #{number}.")
        self.notify_customer(order, customer_text.format(number=number))
        self.notify_restaurant(order, restaurant_text.format(number=number))
