"""
Document stores backing the geofence registry, case ledger and audit sink.
"""

from .base import DocumentStore
from .memory import InMemoryDocumentStore
from .firestore import FirestoreDocumentStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "FirestoreDocumentStore",
]
