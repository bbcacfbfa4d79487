"""
Tests for intent classification helpers.
"""
from unittest.mock import MagicMock

import pytest

from order_bot.errors import UpstreamUnavailable
from order_bot.services.intents import (
    InstructorIntentClassifier,
    Intent,
    IntentResult,
    ItemMention,
    classify_safely,
    get_instructor_client,
)


class TestInstructorIntentClassifier:
    def test_requests_structured_result(self):
        expected = IntentResult(intent=Intent.ADD_ITEM, items=[ItemMention(name="burger", quantity=2)])
        client = MagicMock()
        client.chat.completions.create.return_value = expected

        classifier = InstructorIntentClassifier(model="test-model", client=client)
        result = classifier.classify("2 burgers", context={"state": "ADDING_ITEMS"}, catalog=["Burger", "Soda"])

        assert result is expected
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_model"] is IntentResult
        prompt = kwargs["messages"][0]["content"]
        assert "2 burgers" in prompt
        assert "Burger, Soda" in prompt
        assert "ADDING_ITEMS" in prompt

    def test_client_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ValueError):
            get_instructor_client()


class TestClassifySafely:
    def test_failures_become_upstream_unavailable(self, classifier):
        classifier.error = TimeoutError("llm timeout")

        with pytest.raises(UpstreamUnavailable):
            classify_safely(classifier, "hi")

    def test_passes_arguments(self, classifier):
        classifier.result = IntentResult(intent=Intent.HELP)

        assert classify_safely(classifier, "help", catalog=["Soda"]).intent == Intent.HELP
        assert classifier.calls == ["help"]


class TestIntentResult:
    def test_defaults(self):
        result = IntentResult()
        assert result.intent == Intent.UNKNOWN
        assert result.items == []
        assert result.validation.is_valid and result.validation.is_complete
