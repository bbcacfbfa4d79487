"""
Active conversation tracking.

A customer who has started talking to the bot stays "in conversation" for
ACTIVE_CONVERSATION_TTL_SECONDS after their last message, so follow-up
messages are routed to the ordering flow without a greeting keyword. This
window is independent from the cart idle timeout: a conversation can stay
active after its cart expired, and vice versa.
"""

import logging
from typing import Optional

from ..config import ACTIVE_CONVERSATION_TTL_SECONDS, SESSION_STORAGE
from ..errors import StoreUnavailable
from .kv_store import KeyValueStore, create_kv_store

logger = logging.getLogger(__name__)


class ActiveConversationTracker:
    def __init__(self, kv: KeyValueStore, ttl_seconds: int = ACTIVE_CONVERSATION_TTL_SECONDS):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(phone: str) -> str:
        return f"active:{phone}"

    def mark_active(self, phone: str) -> None:
        self.kv.set(self._key(phone), "1", self.ttl_seconds)

    def is_active(self, phone: str) -> bool:
        try:
            return self.kv.get(self._key(phone)) is not None
        except StoreUnavailable as exc:
            logger.warning("Could not check active conversation for %s: %s", phone, exc)
            return False

    def clear(self, phone: str) -> None:
        self.kv.delete(self._key(phone))


def create_conversation_tracker(backend: Optional[str] = None) -> ActiveConversationTracker:
    kv = create_kv_store(backend or SESSION_STORAGE, namespace="conversation")
    return ActiveConversationTracker(kv)
