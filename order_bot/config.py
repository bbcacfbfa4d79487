"""
Configuration Module for Order Bot
==================================

This module centralizes the configuration settings and environment variables
used by the order core. Values are parsed once at import time so that
misconfiguration shows up at startup rather than in the middle of a webhook.

Configuration Categories:
-------------------------
- **Storage Backends**: Which key-value backend holds cart sessions and
  idempotency records ("memory" for single-instance deployments, "redis" for
  multi-instance deployments).

- **Expiry Windows**: Idle TTL for cart sessions, the separate "active
  conversation" window, and TTLs for the different idempotency key families.

- **Payments**: Platform fee percentage applied when splitting a payment
  between the platform and the restaurant.

- **Restaurants**: Default timezone used when a restaurant has none configured.

Environment Variables:
----------------------
- DATABASE_URL: SQLAlchemy database URL (default: local SQLite file)
- REDIS_URL: Redis connection URL (default: "redis://localhost:6379/0")
- SESSION_STORAGE: "memory" or "redis" (default: "memory")
- IDEMPOTENCY_STORAGE: "memory" or "redis" (default: SESSION_STORAGE)
- CART_SESSION_TTL_SECONDS: Idle expiry for cart sessions (default: 3600)
- ACTIVE_CONVERSATION_TTL_SECONDS: Active conversation window (default: 1800)
- ORDER_IDEMPOTENCY_TTL_SECONDS: TTL for order creation keys (default: 3600)
- WEBHOOK_IDEMPOTENCY_TTL_SECONDS: TTL for webhook/payment keys (default: 86400)
- IGNORED_EVENT_TTL_SECONDS: TTL for irrelevant webhook events (default: 3600)
- PLATFORM_FEE_PERCENT: Platform fee percentage, decimal string (default: "5")
- DEFAULT_TIMEZONE: IANA timezone name (default: "America/Recife")

Usage:
------
    from order_bot.config import PLATFORM_FEE_PERCENT, SESSION_STORAGE
"""

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# Database
# =============================================================================

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./order_bot.db")


# =============================================================================
# Key-Value Storage Backends
# =============================================================================
# "memory" keeps state in this process only. It is lost on restart and is
# not shared between workers. "redis" shares state between instances.

REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
SESSION_STORAGE: str = os.getenv("SESSION_STORAGE", "memory").lower()
IDEMPOTENCY_STORAGE: str = os.getenv("IDEMPOTENCY_STORAGE", SESSION_STORAGE).lower()


# =============================================================================
# Expiry Windows
# =============================================================================

# A cart with no activity for this long silently expires
CART_SESSION_TTL_SECONDS: int = int(os.getenv("CART_SESSION_TTL_SECONDS", "3600"))

# How long a conversation counts as "active" after the last inbound message
ACTIVE_CONVERSATION_TTL_SECONDS: int = int(os.getenv("ACTIVE_CONVERSATION_TTL_SECONDS", "1800"))

# Long enough to absorb message redelivery, short enough not to pile up keys
ORDER_IDEMPOTENCY_TTL_SECONDS: int = int(os.getenv("ORDER_IDEMPOTENCY_TTL_SECONDS", "3600"))

# Providers may redeliver webhooks for about a day
WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = int(os.getenv("WEBHOOK_IDEMPOTENCY_TTL_SECONDS", "86400"))
IGNORED_EVENT_TTL_SECONDS: int = int(os.getenv("IGNORED_EVENT_TTL_SECONDS", "3600"))

# Lease held while the first attempt of an idempotent create is running
CREATE_LEASE_TTL_SECONDS: int = int(os.getenv("CREATE_LEASE_TTL_SECONDS", "30"))


# =============================================================================
# Payments
# =============================================================================
# Read once here and passed explicitly into the reconciliation flow; the
# split computation never looks at the environment itself.

PLATFORM_FEE_PERCENT: Decimal = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "5"))


# =============================================================================
# Restaurants & Orders
# =============================================================================

DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/Recife")

# Number of times order creation is retried after a daily sequence collision
SEQUENCE_RETRY_ATTEMPTS: int = int(os.getenv("SEQUENCE_RETRY_ATTEMPTS", "5"))

MAX_ITEM_QUANTITY = 99
