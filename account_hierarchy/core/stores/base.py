"""
Hierarchy store contract.

The engine reaches persisted accounts only through this interface. Every
call is a single independent store operation; nothing here spans more
than one document except `bulk_update` and `traverse`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from account_hierarchy.app.models import Account, LevelCount

# Fields a caller may set through update_by_id / bulk_update
UPDATABLE_FIELDS = frozenset({
    "name",
    "parent_id",
    "level",
    "hierarchy_path",
    "updated_at",
    "updated_by",
})


@dataclass
class AccountQuery:
    """
    Filter for `find` and `count`. Unset fields do not constrain.

    `path_prefix` is a literal prefix; backends must escape it rather than
    treat it as a pattern.
    """
    client_id: Optional[str] = None
    parent_id: Optional[str] = None
    level: Optional[int] = None
    path_prefix: Optional[str] = None
    ids: Optional[List[str]] = None
    exclude_id: Optional[str] = None

    def matches(self, account: Account) -> bool:
        if self.client_id is not None and account.client_id != self.client_id:
            return False
        if self.parent_id is not None and account.parent_id != self.parent_id:
            return False
        if self.level is not None and account.level != self.level:
            return False
        if self.path_prefix is not None and not account.hierarchy_path.startswith(self.path_prefix):
            return False
        if self.ids is not None and account.id not in self.ids:
            return False
        if self.exclude_id is not None and account.id == self.exclude_id:
            return False
        return True


@dataclass
class AccountUpdate:
    """One entry of a bulk update."""
    account_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TraversalEntry:
    """An account reached by `traverse`, tagged with its hop count from the root."""
    account: Account
    depth: int
    client_name: Optional[str] = None


def check_updatable(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable through the store: {sorted(unknown)}")


class HierarchyStore(ABC):
    """Persistence operations required by the hierarchy engine."""

    @abstractmethod
    async def insert(self, account: Account) -> str:
        """Persist a new account and return its id."""

    @abstractmethod
    async def find_by_id(self, account_id: str) -> Optional[Account]:
        """Fetch one account, or None."""

    @abstractmethod
    async def find(self, query: AccountQuery) -> List[Account]:
        """All accounts matching `query`, ordered by hierarchy_path."""

    @abstractmethod
    async def count(self, query: AccountQuery) -> int:
        """Number of accounts matching `query`."""

    @abstractmethod
    async def update_by_id(
        self,
        account_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> bool:
        """
        Set `fields` on one account and bump its version.

        With `expected_version`, the write only applies when the stored
        version still matches and ConcurrentModificationError is raised
        otherwise. Returns False when the account does not exist.
        """

    @abstractmethod
    async def bulk_update(self, updates: List[AccountUpdate]) -> int:
        """Apply many single-document updates in one pass; returns rows changed."""

    @abstractmethod
    async def delete_by_id(self, account_id: str) -> bool:
        """Delete one account; False when it did not exist."""

    @abstractmethod
    async def push_child(self, parent_id: str, child_id: str) -> None:
        """Atomically append `child_id` to the parent's child_ids (no duplicates)."""

    @abstractmethod
    async def pull_child(self, parent_id: str, child_id: str) -> None:
        """Atomically remove `child_id` from the parent's child_ids."""

    @abstractmethod
    async def count_by_level(self, client_id: str) -> List[LevelCount]:
        """Grouping aggregation: account count per level for one tenant, sorted by level."""

    @abstractmethod
    async def traverse(self, root_id: str, max_depth: int) -> List[TraversalEntry]:
        """
        Root (depth 0) plus every account reachable through child_ids
        within `max_depth` hops, each labelled with its tenant name.
        Empty when the root does not exist.
        """
