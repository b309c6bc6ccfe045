"""
Firestore query helpers.

NOTE: For firebase_admin SDK, we use positional arguments for where().
The deprecation warning about FieldFilter is just a warning - the
functionality is still supported.
"""

from typing import Any, Dict, Optional


def where_filter(query, field_path: str, op_string: str, value):
    """
    Helper function for Firestore queries.

    Usage:
        query = where_filter(collection, "owner_id", "==", "user_1")
        query = where_filter(query, "status", "==", "active")
    """
    return query.where(field_path, op_string, value)


def apply_equality_filters(query, filters: Optional[Dict[str, Any]]):
    """Chain one '==' clause per filter key."""
    for field_path, value in (filters or {}).items():
        query = where_filter(query, field_path, "==", value)
    return query
