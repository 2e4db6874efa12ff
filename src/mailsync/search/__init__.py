"""Search indexing of canonical messages."""

from .indexer import ElasticsearchIndexer, SearchIndexer, message_to_document

__all__ = ["ElasticsearchIndexer", "SearchIndexer", "message_to_document"]
