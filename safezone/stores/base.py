from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """
    Durable document store behind the in-memory registries.

    Contract:
    - Documents are JSON-compatible dicts addressed by (collection, doc_id).
    - put() overwrites the whole document.
    - query() applies equality filters conjunctively; no filters lists
      the whole collection.
    - Implementations may raise on I/O failure; callers route writes
      through the outbound executor and log failures.
    """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError
