"""
Account Hierarchy Service.

Manages a tenant's account tree (at most 5 levels) over a HierarchyStore.
Every account is stored with both a parent link / child list and a
materialized path; this service keeps the two in step.

Features:
- Create under a parent or at the tenant root
- Move with a single bulk rewrite of all descendants
- Leaf-only deletion
- Descendant, level and statistics queries
- Recursive and bulk tree reconstruction
- Per-tenant serialization of structural writes plus a version check on moves
- Best-effort telemetry event per call
"""

import logging
import time
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from account_hierarchy.app.models import (
    Account,
    AccountTreeNode,
    BranchStats,
    ClientStats,
    CreateAccountRequest,
    IntegrityReport,
    LevelCount,
    MAX_HIERARCHY_LEVEL,
    MoveAccountRequest,
    ParentAccountSummary,
    UpdateAccountRequest,
)
from account_hierarchy.core.exceptions import (
    AccountNotFoundError,
    HasChildrenError,
    HierarchyCycleError,
    HierarchyException,
    InvalidLevelError,
    LevelLimitExceededError,
    PartialMutationError,
    TenantMismatchError,
)
from account_hierarchy.core.services.account_hierarchy.integrity import check_accounts
from account_hierarchy.core.services.account_hierarchy.locks import HierarchyLockManager
from account_hierarchy.core.services.account_hierarchy.path_utils import (
    child_path,
    get_descendants_prefix,
    next_sibling_index,
    rewrite_prefix,
)
from account_hierarchy.core.services.account_hierarchy.tree_builder import (
    BulkTreeBuilder,
    RecursiveTreeBuilder,
)
from account_hierarchy.core.services.telemetry import (
    TelemetryEvent,
    TelemetrySink,
    get_telemetry_sink,
)
from account_hierarchy.core.stores import (
    AccountQuery,
    AccountUpdate,
    HierarchyStore,
    get_hierarchy_store,
)
from account_hierarchy.core.utils.logging import safe_error_log

logger = logging.getLogger(__name__)


class AccountHierarchyService:
    """Hierarchy engine for multi-tenant account trees."""

    def __init__(
        self,
        store: Optional[HierarchyStore] = None,
        telemetry: Optional[TelemetrySink] = None,
        lock_manager: Optional[HierarchyLockManager] = None
    ):
        self.store = store or get_hierarchy_store()
        self.telemetry = telemetry or get_telemetry_sink()
        self.locks = lock_manager or HierarchyLockManager()
        self.tree_builder = RecursiveTreeBuilder(self.store)
        self.bulk_tree_builder = BulkTreeBuilder(self.store)

    # ==========================================================================
    # Telemetry
    # ==========================================================================

    async def _emit(self, event: TelemetryEvent) -> None:
        try:
            await self.telemetry.emit(event)
        except Exception as e:
            logger.warning(f"Failed to send telemetry event: {e}", extra={"operation": event.operation})

    @asynccontextmanager
    async def _track(
        self,
        operation: str,
        user_id: Optional[str] = None,
        **metadata: Any
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Time one engine call and emit its outcome.

        The yielded dict is merged into the event metadata; callers add
        result details (ids, paths, counts) to it before returning.
        """
        started = time.perf_counter()
        context: Dict[str, Any] = {k: v for k, v in metadata.items() if v is not None}

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 2)

        try:
            yield context
        except HierarchyException as e:
            log = logger.error if e.http_status >= 500 else logger.warning
            log(f"{operation} failed: {e.message}", extra={"error_code": e.error_code.value, **context})
            await self._emit(TelemetryEvent(
                operation=operation,
                outcome="failure",
                status_code=e.http_status,
                message=f"{operation} failed: {e.message}",
                user_id=user_id,
                metadata={**context, "error_code": e.error_code.value, **e.context},
                response_time_ms=elapsed_ms(),
                error_message=e.message,
            ))
            raise
        except Exception as e:
            safe_error_log(logger, f"{operation} failed", e, **context)
            await self._emit(TelemetryEvent(
                operation=operation,
                outcome="failure",
                status_code=500,
                message=f"{operation} failed: {e}",
                user_id=user_id,
                metadata=context,
                response_time_ms=elapsed_ms(),
                error_message=str(e),
            ))
            raise
        else:
            await self._emit(TelemetryEvent(
                operation=operation,
                outcome="success",
                message=f"{operation} succeeded",
                user_id=user_id,
                metadata=context,
                response_time_ms=elapsed_ms(),
            ))

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def _require(self, account_id: str, message: str = "Account not found") -> Account:
        account = await self.store.find_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(account_id, message)
        return account

    async def _ensure_not_in_branch(self, account: Account, new_parent: Account) -> None:
        """Walk the new parent's ancestor chain; the moved account must not be on it."""
        current: Optional[Account] = new_parent
        hops = 0
        while current is not None and hops <= MAX_HIERARCHY_LEVEL:
            if current.id == account.id:
                raise HierarchyCycleError(account.id, new_parent.id)
            if current.parent_id is None:
                return
            current = await self.store.find_by_id(current.parent_id)
            hops += 1

    # ==========================================================================
    # Read Operations
    # ==========================================================================

    async def get_account(self, account_id: str) -> Account:
        async with self._track("READ", account_id=account_id):
            return await self._require(account_id)

    async def find_all(self, client_id: str) -> List[Account]:
        """All accounts of one tenant ordered by path."""
        async with self._track("READ", client_id=client_id) as ctx:
            accounts = await self.store.find(AccountQuery(client_id=client_id))
            ctx["retrieved_count"] = len(accounts)
            logger.info(f"Retrieved {len(accounts)} accounts for client: {client_id}")
            return accounts

    async def find_descendants(self, account_id: str, strict: bool = False) -> List[Account]:
        """
        Accounts whose path starts with this account's path, excluding itself.

        The default match is an unqualified textual prefix across all tenants,
        so path '1' also matches '10.2'. Pass strict=True for true descendants
        only (dot-qualified prefix within the account's tenant).
        """
        async with self._track("READ_DESCENDANTS", account_id=account_id, strict=strict) as ctx:
            account = await self._require(account_id)
            if strict:
                query = AccountQuery(
                    client_id=account.client_id,
                    path_prefix=get_descendants_prefix(account.hierarchy_path),
                )
            else:
                query = AccountQuery(path_prefix=account.hierarchy_path, exclude_id=account.id)

            descendants = await self.store.find(query)
            ctx["descendants_count"] = len(descendants)
            return descendants

    async def find_by_level(self, level: int, client_id: str) -> List[Account]:
        async with self._track("READ_BY_LEVEL", level=level, client_id=client_id) as ctx:
            if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= MAX_HIERARCHY_LEVEL:
                raise InvalidLevelError(level)
            accounts = await self.store.find(AccountQuery(client_id=client_id, level=level))
            ctx["retrieved_count"] = len(accounts)
            return accounts

    async def get_account_hierarchy(self, account_id: str) -> AccountTreeNode:
        """Nested tree built with one store call per node."""
        async with self._track("READ_HIERARCHY", account_id=account_id):
            tree = await self.tree_builder.build_tree(account_id)
            if tree is None:
                raise AccountNotFoundError(account_id)
            return tree

    async def get_account_hierarchy_optimized(self, account_id: str) -> AccountTreeNode:
        """Nested tree built from one bounded traversal; includes tenant labels."""
        async with self._track("READ_HIERARCHY_OPTIMIZED", account_id=account_id):
            return await self.bulk_tree_builder.build_tree_optimized(account_id)

    # ==========================================================================
    # Statistics
    # ==========================================================================

    async def get_branch_stats(self, account_id: str) -> BranchStats:
        async with self._track("READ_BRANCH_STATS", account_id=account_id) as ctx:
            parent = await self._require(account_id, "Parent account not found")
            descendants = await self.store.find(AccountQuery(
                client_id=parent.client_id,
                path_prefix=get_descendants_prefix(parent.hierarchy_path),
            ))

            per_level = Counter(d.level for d in descendants)
            stats = BranchStats(
                parent_account=ParentAccountSummary(id=parent.id, name=parent.name, level=parent.level),
                total_descendants=len(descendants),
                direct_children=len(parent.child_ids),
                level_breakdown=[LevelCount(level=lvl, count=cnt) for lvl, cnt in sorted(per_level.items())],
            )
            ctx["total_descendants"] = stats.total_descendants
            return stats

    async def get_client_stats(self, client_id: str) -> ClientStats:
        async with self._track("READ_CLIENT_STATS", client_id=client_id) as ctx:
            level_breakdown = await self.store.count_by_level(client_id)
            total_accounts = await self.store.count(AccountQuery(client_id=client_id))
            ctx["total_accounts"] = total_accounts
            return ClientStats(
                client_id=client_id,
                total_accounts=total_accounts,
                level_breakdown=level_breakdown,
            )

    async def check_integrity(self, client_id: str) -> IntegrityReport:
        """Report every structural invariant violation in one tenant."""
        async with self._track("CHECK_INTEGRITY", client_id=client_id) as ctx:
            accounts = await self.store.find(AccountQuery(client_id=client_id))
            report = check_accounts(client_id, accounts)
            ctx.update(report.to_log_context())
            if not report.is_consistent:
                logger.warning("Hierarchy integrity violations found", extra=report.to_log_context())
            return report

    # ==========================================================================
    # Create Operations
    # ==========================================================================

    async def create_account(
        self,
        request: CreateAccountRequest,
        created_by: Optional[str] = None
    ) -> Account:
        """
        Create an account under `request.parent_id`, or at the tenant root.

        The sibling index is one past the highest existing sibling index,
        which equals "children + 1" while indices are contiguous.
        """
        async with self._track(
            "CREATE", created_by, client_id=request.client_id, parent_id=request.parent_id
        ) as ctx:
            logger.info(f"Creating account with name: {request.name} for client: {request.client_id}")

            async with self.locks.lock(request.client_id):
                parent: Optional[Account] = None
                if request.parent_id:
                    parent = await self._require(request.parent_id, "Parent account not found")
                    if parent.client_id != request.client_id:
                        raise TenantMismatchError(request.client_id, parent.client_id, parent.id)
                    if parent.level >= MAX_HIERARCHY_LEVEL:
                        raise LevelLimitExceededError(
                            "Cannot create account beyond level 5",
                            context={"parent_id": parent.id, "parent_level": parent.level},
                        )
                    level = parent.level + 1
                    parent_path = parent.hierarchy_path
                    siblings = await self.store.find(AccountQuery(parent_id=parent.id))
                else:
                    level = 1
                    parent_path = ""
                    siblings = await self.store.find(AccountQuery(client_id=request.client_id, level=1))

                index = next_sibling_index(s.hierarchy_path for s in siblings)
                account = Account(
                    id=str(uuid.uuid4()),
                    name=request.name,
                    client_id=request.client_id,
                    parent_id=parent.id if parent else None,
                    level=level,
                    hierarchy_path=child_path(parent_path, index),
                    child_ids=[],
                    version=1,
                    created_at=datetime.now(timezone.utc),
                    created_by=created_by,
                )

                await self.store.insert(account)
                if parent is not None:
                    try:
                        await self.store.push_child(parent.id, account.id)
                    except Exception as e:
                        raise PartialMutationError(
                            "CREATE", account.id, ["insert_account"], "link_parent", e
                        ) from e

            ctx.update(account_id=account.id, level=account.level, hierarchy_path=account.hierarchy_path)
            logger.info(
                f"Account created: {account.id}",
                extra={"client_id": account.client_id, "hierarchy_path": account.hierarchy_path}
            )
            return account

    # ==========================================================================
    # Update Operations
    # ==========================================================================

    async def update_account(
        self,
        account_id: str,
        request: UpdateAccountRequest,
        updated_by: Optional[str] = None
    ) -> Account:
        """Rename an account. Structure only changes through move_account."""
        async with self._track("UPDATE", updated_by, account_id=account_id):
            updated = await self.store.update_by_id(
                account_id, {"name": request.name, "updated_by": updated_by}
            )
            if not updated:
                raise AccountNotFoundError(account_id)
            return await self._require(account_id)

    async def move_account(
        self,
        account_id: str,
        request: MoveAccountRequest,
        moved_by: Optional[str] = None
    ) -> Account:
        """
        Re-parent an account and cascade the change to its branch.

        Sequence (independent store calls, serialized per tenant):
        1. version-checked update of the account's parent/level/path
        2. pull from the old parent's child_ids
        3. push into the new parent's child_ids
        4. one bulk rewrite of every descendant's path prefix and level

        A failure after step 1 raises PartialMutationError; nothing is rolled back.
        """
        new_parent_id = request.new_parent_id
        async with self._track("MOVE", moved_by, account_id=account_id, new_parent_id=new_parent_id) as ctx:
            account = await self._require(account_id)

            async with self.locks.lock(account.client_id):
                # Re-read under the lock; a concurrent move may have finished meanwhile
                account = await self._require(account_id)
                if new_parent_id == account.parent_id:
                    ctx["structural_change"] = False
                    return account

                new_parent: Optional[Account] = None
                if new_parent_id is not None:
                    new_parent = await self._require(new_parent_id, "Parent account not found")
                    if new_parent.client_id != account.client_id:
                        raise TenantMismatchError(account.client_id, new_parent.client_id, new_parent.id)
                    await self._ensure_not_in_branch(account, new_parent)
                    if new_parent.level >= MAX_HIERARCHY_LEVEL:
                        raise LevelLimitExceededError(
                            "Cannot move account beyond level 5",
                            context={"new_parent_id": new_parent.id, "parent_level": new_parent.level},
                        )
                    new_level = new_parent.level + 1
                    parent_path = new_parent.hierarchy_path
                    siblings = await self.store.find(AccountQuery(parent_id=new_parent.id, exclude_id=account.id))
                else:
                    new_level = 1
                    parent_path = ""
                    siblings = await self.store.find(AccountQuery(
                        client_id=account.client_id, level=1, exclude_id=account.id
                    ))

                old_path = account.hierarchy_path
                level_delta = new_level - account.level
                descendants = await self.store.find(AccountQuery(
                    client_id=account.client_id,
                    path_prefix=get_descendants_prefix(old_path),
                ))
                deepest = max((d.level for d in descendants), default=account.level)
                if deepest + level_delta > MAX_HIERARCHY_LEVEL:
                    raise LevelLimitExceededError(
                        "Cannot move account beyond level 5",
                        context={"deepest_descendant_level": deepest, "level_delta": level_delta},
                    )

                new_path = child_path(parent_path, next_sibling_index(s.hierarchy_path for s in siblings))

                completed: List[str] = []
                step = "update_account"
                try:
                    updated = await self.store.update_by_id(
                        account.id,
                        {
                            "parent_id": new_parent_id,
                            "level": new_level,
                            "hierarchy_path": new_path,
                            "updated_by": moved_by,
                        },
                        expected_version=account.version,
                    )
                    if not updated:
                        raise AccountNotFoundError(account.id)
                    completed.append(step)

                    if account.parent_id:
                        step = "unlink_old_parent"
                        await self.store.pull_child(account.parent_id, account.id)
                        completed.append(step)

                    if new_parent is not None:
                        step = "link_new_parent"
                        await self.store.push_child(new_parent.id, account.id)
                        completed.append(step)

                    if descendants:
                        step = "cascade_descendants"
                        await self.store.bulk_update([
                            AccountUpdate(
                                account_id=d.id,
                                fields={
                                    "hierarchy_path": rewrite_prefix(d.hierarchy_path, old_path, new_path),
                                    "level": d.level + level_delta,
                                    "updated_by": moved_by,
                                },
                            )
                            for d in descendants
                        ])
                        completed.append(step)
                except Exception as e:
                    if not completed:
                        raise
                    raise PartialMutationError("MOVE", account.id, completed, step, e) from e

            ctx.update(
                structural_change=True,
                old_hierarchy_path=old_path,
                new_hierarchy_path=new_path,
                old_level=account.level,
                new_level=new_level,
                descendants_updated=len(descendants),
            )
            logger.info(
                f"Account moved: {account.id}",
                extra={"old_hierarchy_path": old_path, "new_hierarchy_path": new_path}
            )
            return await self._require(account.id)

    # ==========================================================================
    # Delete Operations
    # ==========================================================================

    async def remove_account(self, account_id: str, deleted_by: Optional[str] = None) -> None:
        """Delete a leaf account and unlink it from its parent."""
        async with self._track("DELETE", deleted_by, account_id=account_id) as ctx:
            account = await self._require(account_id)

            async with self.locks.lock(account.client_id):
                account = await self._require(account_id)
                linked_children = await self.store.count(AccountQuery(parent_id=account.id))
                child_count = max(len(account.child_ids), linked_children)
                if child_count:
                    raise HasChildrenError(account.id, child_count)

                completed: List[str] = []
                step = "unlink_parent"
                try:
                    if account.parent_id:
                        await self.store.pull_child(account.parent_id, account.id)
                        completed.append(step)
                    step = "delete_account"
                    await self.store.delete_by_id(account.id)
                except Exception as e:
                    if not completed:
                        raise
                    raise PartialMutationError("DELETE", account.id, completed, step, e) from e

            ctx.update(account_name=account.name, level=account.level, hierarchy_path=account.hierarchy_path)
            logger.info(f"Account deleted: {account.id}")


_service: Optional[AccountHierarchyService] = None


def get_account_hierarchy_service() -> AccountHierarchyService:
    """Shared service over the configured store and telemetry sink."""
    global _service
    if _service is None:
        _service = AccountHierarchyService()
    return _service
