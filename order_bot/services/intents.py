"""
Intent Classification
=====================

The classifier turns free text into a structured intent, the item mentions
it found, and a validation block. How it classifies is up to the
implementation; the order core only relies on the result shape:

- ``validation.is_valid`` False: hard rejection, show the errors
- ``validation.is_complete`` False: ask the customer for what is missing
- non-empty ``validation.warnings``: proceed, but tell the customer

``InstructorIntentClassifier`` is the LLM-backed implementation, using
instructor to get an ``IntentResult`` straight out of the chat completion.
Classifier failures become UpstreamUnavailable via ``classify_safely`` so the
conversation can fall back to a help message instead of failing.
"""

import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import instructor
from openai import OpenAI
from pydantic import BaseModel, Field

from ..errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    CREATE_ORDER = "create_order"
    ADD_ITEM = "add_item"
    REMOVE_ITEM = "remove_item"
    CONFIRM = "confirm"
    CHECK_STATUS = "check_status"
    CANCEL_ORDER = "cancel_order"
    HELP = "help"
    UNKNOWN = "unknown"


class ItemMention(BaseModel):
    name: str = Field(description="Item name as the customer wrote it")
    quantity: int = Field(default=1, description="Quantity requested, 1 if not stated")
    category: Optional[str] = Field(default=None, description="Menu category if stated (e.g. 'drinks')")


class IntentValidation(BaseModel):
    is_valid: bool = True
    is_complete: bool = True
    missing_required: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class IntentResult(BaseModel):
    intent: Intent = Intent.UNKNOWN
    items: List[ItemMention] = Field(default_factory=list)
    validation: IntentValidation = Field(default_factory=IntentValidation)


class IntentClassifier(ABC):
    @abstractmethod
    def classify(
        self,
        text: str,
        context: Optional[Dict[str, Any]] = None,
        catalog: Optional[List[str]] = None,
        rules: Optional[Dict[str, Any]] = None,
    ) -> IntentResult:
        """Classify ``text`` given the conversation context and catalog."""


def get_instructor_client():
    """Get instructor-wrapped OpenAI client."""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ValueError("OPENAI_API_KEY not set")
    return instructor.from_openai(OpenAI(api_key=api_key))


class InstructorIntentClassifier(IntentClassifier):
    def __init__(self, model: str = "gpt-4o-mini", client=None):
        self.model = model
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_instructor_client()
        return self._client

    def classify(self, text, context=None, catalog=None, rules=None) -> IntentResult:
        prompt = f"""Classify the customer's message for a restaurant ordering chat.

Message: "{text}"
Conversation state: {(context or {}).get("state", "IDLE")}
"""
        if catalog:
            prompt += "\nMenu items: " + ", ".join(catalog)
        if rules:
            prompt += f"\nRestaurant rules: {rules}"
        prompt += """

Extract every item the customer mentions with its quantity (default 1).
Set validation.is_valid to false only if the request cannot be fulfilled at all.
Set validation.is_complete to false and list missing_required when required
details are missing.
"""

        return self.client.chat.completions.create(
            model=self.model,
            response_model=IntentResult,
            messages=[{"role": "user", "content": prompt}],
        )


def classify_safely(classifier: IntentClassifier, text: str, **kwargs) -> IntentResult:
    """
    Run the classifier, converting any failure into UpstreamUnavailable.
    """
    try:
        return classifier.classify(text, **kwargs)
    except Exception as exc:
        logger.warning("Intent classification failed: %s", exc)
        raise UpstreamUnavailable("Intent classifier unavailable") from exc
