import logging
from typing import Any, Dict, List, Optional

from safezone.utils.firestore_helpers import apply_equality_filters

from .base import DocumentStore

logger = logging.getLogger(__name__)


class FirestoreDocumentStore(DocumentStore):
    """
    Firestore-backed store.

    Takes a firestore.Client (see safezone.config.firebase.initialize_store). Each
    collection maps 1:1 to a Firestore collection and doc ids are kept.
    """

    def __init__(self, db):
        self.db = db

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = self.db.collection(collection).document(doc_id).get()
        if not doc.exists:
            return None
        return doc.to_dict()

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self.db.collection(collection).document(doc_id).set(data)
        logger.debug(f"Saved {collection}/{doc_id} to Firestore")

    def delete(self, collection: str, doc_id: str) -> bool:
        doc_ref = self.db.collection(collection).document(doc_id)
        if not doc_ref.get().exists:
            return False
        doc_ref.delete()
        logger.debug(f"Deleted {collection}/{doc_id} from Firestore")
        return True

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        query = apply_equality_filters(self.db.collection(collection), filters)
        results = []
        for doc in query.stream():
            data = doc.to_dict()
            if data is not None:
                results.append(data)
        return results
