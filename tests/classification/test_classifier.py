"""Tests for the chat-completions classifier."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import requests

from mailsync.classification.classifier import (
    CATEGORIZATION_PROMPT,
    Classifier,
    LLMClassifier,
    parse_classification,
)
from mailsync.errors import ClassificationError
from mailsync.sync.models import MessageCategory


def _reply(content: str, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error")
    return response


def _classifier(session) -> LLMClassifier:
    return LLMClassifier(
        api_key="sk-test",
        base_url="https://llm.example.com/v1/",
        model="gpt-test",
        timeout=5,
        session=session,
    )


def test_classifier_satisfies_protocol():
    assert isinstance(LLMClassifier(api_key="k"), Classifier)


def test_classify_posts_chat_completion():
    session = MagicMock()
    session.post.return_value = _reply(
        json.dumps({"category": "Interested", "confidence": 0.92, "reasoning": "asks for pricing"})
    )

    result = _classifier(session).classify("Pricing?", "Could you send pricing?")

    assert result.category == MessageCategory.INTERESTED
    assert result.confidence == pytest.approx(0.92)
    assert result.reasoning == "asks for pricing"

    args, kwargs = session.post.call_args
    assert args[0] == "https://llm.example.com/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["timeout"] == 5
    payload = kwargs["json"]
    assert payload["model"] == "gpt-test"
    assert payload["messages"][0] == {"role": "system", "content": CATEGORIZATION_PROMPT}
    assert payload["messages"][1]["content"].startswith("Subject: Pricing?\n\nBody: ")


def test_request_body_is_truncated():
    request = LLMClassifier(api_key="k").build_request("s", "x" * 5000)
    assert request["messages"][1]["content"] == "Subject: s\n\nBody: " + "x" * 1000


def test_http_error_raises_classification_error():
    session = MagicMock()
    session.post.return_value = _reply("{}", status=500)

    with pytest.raises(ClassificationError):
        _classifier(session).classify("s", "b")


def test_timeout_raises_classification_error():
    session = MagicMock()
    session.post.side_effect = requests.exceptions.Timeout("slow")

    with pytest.raises(ClassificationError) as exc_info:
        _classifier(session).classify("s", "b")
    assert "timed out" in str(exc_info.value)


def test_empty_reply_raises_classification_error():
    session = MagicMock()
    response = _reply("")
    response.json.return_value = {"choices": []}
    session.post.return_value = response

    with pytest.raises(ClassificationError):
        _classifier(session).classify("s", "b")


def test_parse_rejects_unknown_category():
    with pytest.raises(ClassificationError):
        parse_classification(json.dumps({"category": "Maybe", "confidence": 0.5}))


def test_parse_rejects_non_json():
    with pytest.raises(ClassificationError):
        parse_classification("Interested, probably")


def test_parse_defaults_and_clamps_confidence():
    assert parse_classification(json.dumps({"category": "Spam"})).confidence == pytest.approx(0.8)
    assert parse_classification(
        json.dumps({"category": "Spam", "confidence": 3})
    ).confidence == pytest.approx(1.0)
    assert parse_classification(
        json.dumps({"category": "Out of Office", "confidence": "high"})
    ).confidence == pytest.approx(0.8)


@pytest.mark.parametrize("category", [c.value for c in MessageCategory])
def test_parse_accepts_every_category(category):
    result = parse_classification(json.dumps({"category": category, "confidence": 0.6}))
    assert result.category.value == category
