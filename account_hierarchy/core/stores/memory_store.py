"""
In-memory hierarchy store.

Backs local development and the test suite. Records are copied on the way
in and out so callers never share state with the store.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from account_hierarchy.app.models import Account, LevelCount
from account_hierarchy.core.exceptions import ConcurrentModificationError
from account_hierarchy.core.stores.base import (
    AccountQuery,
    AccountUpdate,
    HierarchyStore,
    TraversalEntry,
    check_updatable,
)

logger = logging.getLogger(__name__)


class InMemoryHierarchyStore(HierarchyStore):
    """
    Thread-safe dict-backed store.

    Usage:
        store = InMemoryHierarchyStore(client_names={"client_a": "Acme"})
        await store.insert(account)
    """

    def __init__(self, client_names: Optional[Dict[str, str]] = None):
        self._accounts: Dict[str, Account] = {}
        self._client_names: Dict[str, str] = dict(client_names or {})
        self._lock = Lock()

    def register_client(self, client_id: str, client_name: str) -> None:
        """Add a tenant label used by `traverse`."""
        with self._lock:
            self._client_names[client_id] = client_name

    def snapshot(self) -> Dict[str, Account]:
        """Deep copy of every stored account keyed by id."""
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._accounts.items()}

    async def insert(self, account: Account) -> str:
        with self._lock:
            if account.id in self._accounts:
                raise ValueError(f"Account {account.id} already exists")
            self._accounts[account.id] = account.model_copy(deep=True)
        return account.id

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy(deep=True) if account else None

    async def find(self, query: AccountQuery) -> List[Account]:
        with self._lock:
            matches = [a.model_copy(deep=True) for a in self._accounts.values() if query.matches(a)]
        return sorted(matches, key=lambda a: (a.hierarchy_path, a.id))

    async def count(self, query: AccountQuery) -> int:
        with self._lock:
            return sum(1 for a in self._accounts.values() if query.matches(a))

    def _apply(self, account: Account, fields: Dict[str, Any]) -> Account:
        values = account.model_dump()
        values.update(fields)
        values["version"] = account.version + 1
        if "updated_at" not in fields:
            values["updated_at"] = datetime.now(timezone.utc)
        return Account(**values)

    async def update_by_id(
        self,
        account_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> bool:
        check_updatable(fields)
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            if expected_version is not None and account.version != expected_version:
                raise ConcurrentModificationError(account_id, expected_version)
            self._accounts[account_id] = self._apply(account, fields)
        return True

    async def bulk_update(self, updates: List[AccountUpdate]) -> int:
        for update in updates:
            check_updatable(update.fields)
        changed = 0
        with self._lock:
            for update in updates:
                account = self._accounts.get(update.account_id)
                if account is None:
                    continue
                self._accounts[update.account_id] = self._apply(account, update.fields)
                changed += 1
        return changed

    async def delete_by_id(self, account_id: str) -> bool:
        with self._lock:
            return self._accounts.pop(account_id, None) is not None

    async def push_child(self, parent_id: str, child_id: str) -> None:
        with self._lock:
            parent = self._accounts.get(parent_id)
            if parent is None:
                logger.warning(f"push_child: parent {parent_id} not found")
                return
            if child_id not in parent.child_ids:
                self._accounts[parent_id] = parent.model_copy(
                    update={"child_ids": parent.child_ids + [child_id]}
                )

    async def pull_child(self, parent_id: str, child_id: str) -> None:
        with self._lock:
            parent = self._accounts.get(parent_id)
            if parent is None:
                logger.warning(f"pull_child: parent {parent_id} not found")
                return
            self._accounts[parent_id] = parent.model_copy(
                update={"child_ids": [c for c in parent.child_ids if c != child_id]}
            )

    async def count_by_level(self, client_id: str) -> List[LevelCount]:
        counts: Dict[int, int] = {}
        with self._lock:
            for account in self._accounts.values():
                if account.client_id == client_id:
                    counts[account.level] = counts.get(account.level, 0) + 1
        return [LevelCount(level=lvl, count=cnt) for lvl, cnt in sorted(counts.items())]

    async def traverse(self, root_id: str, max_depth: int) -> List[TraversalEntry]:
        with self._lock:
            root = self._accounts.get(root_id)
            if root is None:
                return []

            entries: List[TraversalEntry] = []
            seen = set()
            queue = deque([(root, 0)])
            while queue:
                account, depth = queue.popleft()
                if account.id in seen:
                    continue
                seen.add(account.id)
                entries.append(TraversalEntry(
                    account=account.model_copy(deep=True),
                    depth=depth,
                    client_name=self._client_names.get(account.client_id),
                ))
                if depth >= max_depth:
                    continue
                for child_id in account.child_ids:
                    child = self._accounts.get(child_id)
                    if child is not None:
                        queue.append((child, depth + 1))
        return entries
