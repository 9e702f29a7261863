"""
Nested tree reconstruction for an account branch.

Two builders produce the same `AccountTreeNode` shape:

- RecursiveTreeBuilder: fetches each node and its children one store call
  at a time. Simple, O(nodes) round trips.
- BulkTreeBuilder: one bounded traversal from the store, then two linear
  passes over a flat arena whose child links are indices. No recursion and
  no further store calls. Also fills the tenant label.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from account_hierarchy.app.models import Account, AccountTreeNode, MAX_HIERARCHY_LEVEL
from account_hierarchy.core.exceptions import AccountNotFoundError
from account_hierarchy.core.stores.base import HierarchyStore, TraversalEntry

logger = logging.getLogger(__name__)

# Root plus 4 hops covers all 5 levels
MAX_TRAVERSAL_DEPTH = MAX_HIERARCHY_LEVEL - 1


def _to_tree_node(account: Account, client_name: Optional[str] = None) -> AccountTreeNode:
    return AccountTreeNode(
        id=account.id,
        name=account.name,
        level=account.level,
        hierarchy_path=account.hierarchy_path,
        client_name=client_name,
        children=[],
    )


class RecursiveTreeBuilder:
    """Builds a branch by repeated child fetches."""

    def __init__(self, store: HierarchyStore):
        self.store = store

    async def build_tree(self, root_id: str) -> Optional[AccountTreeNode]:
        """Nested tree rooted at `root_id`, or None when the root is missing."""
        return await self._build(root_id, set())

    async def _build(self, account_id: str, visited: Set[str]) -> Optional[AccountTreeNode]:
        if account_id in visited:
            logger.warning(f"Account {account_id} reached twice while building tree; skipping")
            return None
        visited.add(account_id)

        account = await self.store.find_by_id(account_id)
        if account is None:
            return None

        children = await asyncio.gather(*[
            self._build(child_id, visited) for child_id in account.child_ids
        ])

        node = _to_tree_node(account)
        node.children.extend(child for child in children if child is not None)
        return node


@dataclass
class ArenaNode:
    """Flat tree slot; children are indices into the same arena."""
    account: Account
    depth: int
    client_name: Optional[str] = None
    child_indices: List[int] = field(default_factory=list)


def build_arena(entries: Iterable[TraversalEntry]) -> List[ArenaNode]:
    """
    First pass allocates one slot per entry; second pass resolves each
    entry's child_ids to slot indices, keeping child_ids order.

    A link is only kept when the child sits exactly one hop deeper, so the
    result is acyclic even if stored links are not.
    """
    arena = [ArenaNode(account=e.account, depth=e.depth, client_name=e.client_name) for e in entries]
    index_by_id = {node.account.id: idx for idx, node in enumerate(arena)}

    for node in arena:
        for child_id in node.account.child_ids:
            child_idx = index_by_id.get(child_id)
            if child_idx is not None and arena[child_idx].depth == node.depth + 1:
                node.child_indices.append(child_idx)
    return arena


def materialize(arena: List[ArenaNode], root_index: int) -> AccountTreeNode:
    """Turn an arena into nested tree nodes without recursion."""
    nodes = [_to_tree_node(slot.account, slot.client_name) for slot in arena]
    for idx, slot in enumerate(arena):
        nodes[idx].children.extend(nodes[child_idx] for child_idx in slot.child_indices)
    return nodes[root_index]


class BulkTreeBuilder:
    """Builds a branch from a single bounded traversal."""

    def __init__(self, store: HierarchyStore, max_depth: int = MAX_TRAVERSAL_DEPTH):
        self.store = store
        self.max_depth = max_depth

    async def build_tree_optimized(self, root_id: str) -> AccountTreeNode:
        """
        Nested tree rooted at `root_id`.

        Raises:
            AccountNotFoundError: root does not exist
        """
        entries = await self.store.traverse(root_id, self.max_depth)
        if not entries:
            raise AccountNotFoundError(root_id)

        arena = build_arena(entries)
        root_index = next(
            (idx for idx, slot in enumerate(arena) if slot.depth == 0),
            None
        )
        if root_index is None:
            raise AccountNotFoundError(root_id)

        logger.debug(
            "Built tree from traversal",
            extra={"root_id": root_id, "node_count": len(arena)}
        )
        return materialize(arena, root_index)
