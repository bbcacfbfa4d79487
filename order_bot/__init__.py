"""
Order Bot: conversational restaurant ordering core.

Modules:
    order_status / order_state_machine: status enum and transition guards
    order_lifecycle: replay-safe mutators mixed into the Order model
    models / db: SQLAlchemy models and session factory
    money / hours: integer-cent arithmetic and restaurant-local time
    services: cart sessions, idempotency, order creation, payments,
        webhook reconciliation and notifications
"""

__version__ = "0.1.0"
