"""Search indexing of canonical messages.

``ElasticsearchIndexer`` speaks the Elasticsearch REST API directly with
``requests``. Documents are keyed by the store id of the message and carry
an ``indexed_at`` timestamp.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import requests

from ..errors import IndexingError
from ..sync.models import Message, MessageCategory


logger = logging.getLogger(__name__)

DEFAULT_INDEX = "emails"

_TEXT_WITH_KEYWORD = {"type": "text", "fields": {"keyword": {"type": "keyword"}}}

INDEX_MAPPING: Dict[str, Any] = {
    "mappings": {
        "properties": {
            "account_id": {"type": "keyword"},
            "message_id": {"type": "keyword"},
            "uid": {"type": "keyword"},
            "subject": _TEXT_WITH_KEYWORD,
            "from_address": _TEXT_WITH_KEYWORD,
            "from_name": _TEXT_WITH_KEYWORD,
            "folder": {"type": "keyword"},
            "body_text": {"type": "text"},
            "body_html": {"type": "text"},
            "category": {"type": "keyword"},
            "received_at": {"type": "date"},
            "is_read": {"type": "boolean"},
            "indexed_at": {"type": "date"},
        }
    }
}


@runtime_checkable
class SearchIndexer(Protocol):
    def upsert(self, message_id: str, document: Dict[str, Any]) -> None: ...

    def delete(self, message_id: str) -> None: ...


def message_to_document(message: Message) -> Dict[str, Any]:
    """Fields of ``message`` that go into the search index."""
    return {
        "account_id": message.account_id,
        "message_id": message.message_id,
        "uid": str(message.uid),
        "subject": message.subject,
        "from_address": message.from_address,
        "from_name": message.from_name,
        "folder": message.folder,
        "body_text": message.body_text,
        "body_html": message.body_html,
        "category": message.category.value if message.category else None,
        "received_at": message.received_at.isoformat(),
        "is_read": message.is_read,
    }


class ElasticsearchIndexer:
    """``SearchIndexer`` over the Elasticsearch REST API."""

    def __init__(
        self,
        node: str = "http://localhost:9200",
        *,
        index_name: str = DEFAULT_INDEX,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.node = node.rstrip("/")
        self.index_name = index_name
        self.timeout = timeout
        self._http = session or requests.Session()

    @property
    def index_url(self) -> str:
        return f"{self.node}/{self.index_name}"

    def ensure_index(self) -> bool:
        """Create the index with its mapping; False when it already existed."""
        try:
            exists = self._http.head(self.index_url, timeout=self.timeout)
            if exists.status_code == 200:
                logger.info(f"Elasticsearch index already exists: {self.index_name}")
                return False
            response = self._http.put(self.index_url, json=INDEX_MAPPING, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise IndexingError(f"Failed to initialize index {self.index_name}: {exc}") from exc
        logger.info(f"Created Elasticsearch index: {self.index_name}")
        return True

    def upsert(self, message_id: str, document: Dict[str, Any]) -> None:
        body = {**document, "indexed_at": datetime.now(timezone.utc).isoformat()}
        try:
            response = self._http.put(
                f"{self.index_url}/_doc/{message_id}",
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise IndexingError(
                f"Failed to index message {message_id}: {exc}",
                details={"message_id": message_id},
            ) from exc
        logger.debug(f"Indexed message {message_id} in {self.index_name}")

    def delete(self, message_id: str) -> None:
        try:
            response = self._http.delete(f"{self.index_url}/_doc/{message_id}", timeout=self.timeout)
            if response.status_code == 404:
                return
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise IndexingError(
                f"Failed to delete message {message_id}: {exc}",
                details={"message_id": message_id},
            ) from exc

    def search(
        self,
        query: str = "",
        *,
        account_id: Optional[str] = None,
        folder: Optional[str] = None,
        category: Optional[MessageCategory] = None,
        offset: int = 0,
        size: int = 50,
    ) -> Dict[str, Any]:
        """Full-text search with optional exact filters, newest first."""
        must: List[Dict[str, Any]] = []
        if query:
            must.append(
                {
                    "multi_match": {
                        "query": query,
                        "fields": ["subject^2", "body_text", "from_address", "from_name"],
                        "type": "best_fields",
                        "fuzziness": "AUTO",
                    }
                }
            )
        if account_id:
            must.append({"term": {"account_id": account_id}})
        if folder:
            must.append({"term": {"folder": folder}})
        if category:
            must.append({"term": {"category": MessageCategory(category).value}})

        body = {
            "from": offset,
            "size": size,
            "query": {"bool": {"must": must or [{"match_all": {}}]}},
            "sort": [{"received_at": {"order": "desc"}}],
        }
        try:
            response = self._http.post(f"{self.index_url}/_search", json=body, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise IndexingError(f"Search failed: {exc}") from exc

        hits = result.get("hits", {})
        total = hits.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)
        return {
            "total": total,
            "hits": [
                {"id": hit.get("_id"), "score": hit.get("_score"), **hit.get("_source", {})}
                for hit in hits.get("hits", [])
            ],
        }

    def health(self) -> Dict[str, Any]:
        try:
            response = self._http.get(f"{self.node}/_cluster/health", timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise IndexingError(f"Elasticsearch health check failed: {exc}") from exc


__all__ = [
    "DEFAULT_INDEX",
    "ElasticsearchIndexer",
    "INDEX_MAPPING",
    "SearchIndexer",
    "message_to_document",
]
