"""
Account hierarchy models package.

Exports the stored record plus request/response models used by the engine.
"""

from .account_models import (
    # Constants
    MAX_HIERARCHY_LEVEL,

    # Stored record
    Account,

    # Request Models
    CreateAccountRequest,
    MoveAccountRequest,
    UpdateAccountRequest,

    # Response Models
    AccountTreeNode,
    LevelCount,
    ParentAccountSummary,
    BranchStats,
    ClientStats,
    IntegrityViolation,
    IntegrityReport,
)

__all__ = [
    "MAX_HIERARCHY_LEVEL",
    "Account",
    "CreateAccountRequest",
    "MoveAccountRequest",
    "UpdateAccountRequest",
    "AccountTreeNode",
    "LevelCount",
    "ParentAccountSummary",
    "BranchStats",
    "ClientStats",
    "IntegrityViolation",
    "IntegrityReport",
]
