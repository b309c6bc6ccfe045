import copy
import threading
from typing import Any, Dict, List, Optional

from .base import DocumentStore


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store used for local development (USE_MOCK_DB) and tests.
    Documents are deep-copied on the way in and out.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(doc_id, None) is not None

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        with self._lock:
            docs = list(self._collections.get(collection, {}).values())
        return [
            copy.deepcopy(doc)
            for doc in docs
            if all(doc.get(field) == value for field, value in filters.items())
        ]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))
