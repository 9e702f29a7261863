"""
Hierarchy store backends.

Usage:
    from account_hierarchy.core.stores import get_hierarchy_store

    store = get_hierarchy_store()
    account = await store.find_by_id(account_id)
"""

from typing import Optional

from account_hierarchy.app.config import settings
from account_hierarchy.core.stores.base import (
    AccountQuery,
    AccountUpdate,
    HierarchyStore,
    TraversalEntry,
)
from account_hierarchy.core.stores.memory_store import InMemoryHierarchyStore

_store: Optional[HierarchyStore] = None


def get_hierarchy_store() -> HierarchyStore:
    """Shared store for the configured backend."""
    global _store
    if _store is None:
        if settings.hierarchy_store_backend == "memory":
            _store = InMemoryHierarchyStore()
        else:
            from account_hierarchy.core.stores.bigquery_store import BigQueryHierarchyStore
            _store = BigQueryHierarchyStore()
    return _store


__all__ = [
    "AccountQuery",
    "AccountUpdate",
    "HierarchyStore",
    "TraversalEntry",
    "InMemoryHierarchyStore",
    "get_hierarchy_store",
]
