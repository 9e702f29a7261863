"""
Invariant sweep over one tenant's accounts.

Multi-step mutations are not transactional, so a failure part way through
can leave the parent links, child lists and paths disagreeing. This module
reports such disagreements; it never repairs them.
"""

from collections import defaultdict
from typing import Dict, List

from account_hierarchy.app.models import (
    Account,
    IntegrityReport,
    IntegrityViolation,
)
from account_hierarchy.core.services.account_hierarchy.path_utils import (
    count_segments,
    get_parent_path,
    validate_path,
)


def check_accounts(client_id: str, accounts: List[Account]) -> IntegrityReport:
    """Check every structural invariant over a tenant's full account list."""
    violations: List[IntegrityViolation] = []
    by_id: Dict[str, Account] = {a.id: a for a in accounts}
    children_by_parent: Dict[str, List[str]] = defaultdict(list)
    paths: Dict[str, List[str]] = defaultdict(list)

    def report(account: Account, rule: str, detail: str) -> None:
        violations.append(IntegrityViolation(account_id=account.id, rule=rule, detail=detail))

    for account in accounts:
        paths[account.hierarchy_path].append(account.id)
        if account.parent_id:
            children_by_parent[account.parent_id].append(account.id)

        if not validate_path(account.hierarchy_path):
            report(account, "path_format", f"malformed path '{account.hierarchy_path}'")
        if account.level != count_segments(account.hierarchy_path):
            report(account, "level_segments",
                   f"level {account.level} but path '{account.hierarchy_path}' has "
                   f"{count_segments(account.hierarchy_path)} segments")
        if (account.parent_id is None) != (account.level == 1):
            report(account, "root_parent", "parent must be set exactly when level > 1")

        if account.parent_id is None:
            continue
        parent = by_id.get(account.parent_id)
        if parent is None:
            report(account, "parent_exists", f"parent {account.parent_id} not found in client")
            continue
        if account.level != parent.level + 1:
            report(account, "parent_level", f"level {account.level} under parent level {parent.level}")
        if get_parent_path(account.hierarchy_path) != parent.hierarchy_path:
            report(account, "path_prefix",
                   f"path '{account.hierarchy_path}' is not a child of '{parent.hierarchy_path}'")
        if account.id not in parent.child_ids:
            report(account, "child_link", f"missing from child_ids of {parent.id}")

    for account in accounts:
        linked = set(account.child_ids)
        actual = set(children_by_parent.get(account.id, []))
        for stale_id in sorted(linked - actual):
            report(account, "child_link", f"child_ids lists {stale_id} whose parent is not this account")
        if len(account.child_ids) != len(linked):
            report(account, "child_link", "child_ids contains duplicates")

    for path, ids in paths.items():
        if len(ids) > 1:
            for account_id in ids:
                violations.append(IntegrityViolation(
                    account_id=account_id,
                    rule="duplicate_path",
                    detail=f"path '{path}' shared by {len(ids)} accounts",
                ))

    return IntegrityReport(
        client_id=client_id,
        checked_accounts=len(accounts),
        violations=violations,
    )
