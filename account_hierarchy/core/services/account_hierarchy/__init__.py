"""
Account Hierarchy Engine

Multi-tenant account trees (at most 5 levels) kept as parent links,
child lists and materialized paths.

Usage:
    from account_hierarchy.core.services.account_hierarchy import (
        AccountHierarchyService,
        get_account_hierarchy_service,
    )

    service = get_account_hierarchy_service()
    account = await service.create_account(CreateAccountRequest(name="HQ", client_id="acme"))
"""

from account_hierarchy.core.services.account_hierarchy.service import (
    AccountHierarchyService,
    get_account_hierarchy_service,
)
from account_hierarchy.core.services.account_hierarchy.locks import HierarchyLockManager
from account_hierarchy.core.services.account_hierarchy.tree_builder import (
    BulkTreeBuilder,
    RecursiveTreeBuilder,
)
from account_hierarchy.core.services.account_hierarchy.integrity import check_accounts

__all__ = [
    "AccountHierarchyService",
    "get_account_hierarchy_service",
    "HierarchyLockManager",
    "BulkTreeBuilder",
    "RecursiveTreeBuilder",
    "check_accounts",
]
