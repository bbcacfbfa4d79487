"""
Services Package for Order Bot
==============================

Business logic on top of the models. Services receive their collaborators
(database session, key-value store, payment provider, message sender) as
arguments rather than creating them.

Available Services:
-------------------
- **kv_store**: Key-value store abstraction (memory / Redis)
- **idempotency**: Exactly-once bookkeeping for retried operations
- **cart_session**: Per-customer cart state for the ordering conversation
- **conversation**: "Active conversation" window tracking
- **order**: CreateOrder and order edits/status changes
- **payment**: Payment provider contract and payment link requests
- **reconciliation**: Payment webhook handling
- **notification**: Best-effort customer/restaurant messages
- **intents**: Intent classifier contract and LLM implementation
- **ordering_flow**: Conversation driver tying the above together

Usage:
------
    from order_bot.services.order import create_order
    from order_bot.services.reconciliation import PaymentReconciler, parse_asaas_event
"""
