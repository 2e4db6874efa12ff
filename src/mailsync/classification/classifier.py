"""Message classification against a fixed category set.

``LLMClassifier`` talks to any OpenAI-compatible chat-completions endpoint
over plain HTTP. It raises ``ClassificationError`` for transport failures,
unparseable replies and categories outside ``MessageCategory``; the fan-out
pipeline turns that into "category unset".
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import requests

from ..errors import ClassificationError
from ..sync.models import Classification, MessageCategory


logger = logging.getLogger(__name__)

BODY_CHAR_LIMIT = 1000
DEFAULT_CONFIDENCE = 0.8

CATEGORIZATION_PROMPT = """You are an email categorization AI. Analyze the following email and categorize it into one of these categories:

1. Interested - The sender shows interest in the product/service, asks questions, or wants to learn more
2. Meeting Booked - The email confirms or proposes a specific meeting time/date
3. Not Interested - The sender explicitly declines, opts out, or shows no interest
4. Spam - Irrelevant marketing, phishing attempts, or automated spam
5. Out of Office - Automated out-of-office or vacation reply

Respond ONLY with a JSON object in this format:
{"category": "one of the categories above", "confidence": 0.0-1.0, "reasoning": "brief explanation"}"""


@runtime_checkable
class Classifier(Protocol):
    def classify(self, subject: str, body: str) -> Classification: ...


class LLMClassifier:
    """Chat-completions classifier.

    Args:
        api_key: Bearer token for the endpoint
        base_url: API root, e.g. ``https://api.openai.com/v1``
        model: Chat model name
        timeout: HTTP timeout in seconds
        temperature: Sampling temperature
        max_tokens: Reply token cap
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        timeout: float = 30.0,
        temperature: float = 0.3,
        max_tokens: int = 200,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._http = session or requests

    def build_request(self, subject: str, body: str) -> Dict[str, Any]:
        content = f"Subject: {subject}\n\nBody: {(body or '')[:BODY_CHAR_LIMIT]}"
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": CATEGORIZATION_PROMPT},
                {"role": "user", "content": content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def classify(self, subject: str, body: str) -> Classification:
        try:
            response = self._http.post(
                f"{self.base_url}/chat/completions",
                json=self.build_request(subject, body),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.Timeout as exc:
            raise ClassificationError(f"Classifier request timed out after {self.timeout}s") from exc
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise ClassificationError(f"Classifier request failed: {exc}") from exc

        return parse_classification(_reply_content(payload))


def _reply_content(payload: Dict[str, Any]) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ClassificationError("Classifier reply has no content") from exc
    if not content:
        raise ClassificationError("Classifier reply has no content")
    return content


def parse_classification(content: str) -> Classification:
    """Parse the model's JSON reply into a ``Classification``."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ClassificationError(f"Classifier reply is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ClassificationError("Classifier reply is not a JSON object")

    try:
        category = MessageCategory(data.get("category"))
    except ValueError as exc:
        raise ClassificationError(
            f"Unknown category {data.get('category')!r}",
            details={"category": data.get("category")},
        ) from exc

    confidence = data.get("confidence") or DEFAULT_CONFIDENCE
    try:
        confidence = min(max(float(confidence), 0.0), 1.0)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE

    return Classification(
        category=category,
        confidence=confidence,
        reasoning=data.get("reasoning"),
    )


__all__ = [
    "CATEGORIZATION_PROMPT",
    "Classifier",
    "LLMClassifier",
    "parse_classification",
]
