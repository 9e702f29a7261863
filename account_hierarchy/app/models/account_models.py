"""
Pydantic models for the account hierarchy.

This module provides:
- The persisted Account record
- Request models for hierarchy mutations
- Response models for trees and statistics
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator


MAX_HIERARCHY_LEVEL = 5


# ============================================================================
# STORED RECORD
# ============================================================================

class Account(BaseModel):
    """A node of a tenant's account hierarchy as persisted in the store."""
    id: str = Field(..., min_length=1, description="Opaque account identifier")
    name: str = Field(..., min_length=1, max_length=200, description="Display name")
    client_id: str = Field(..., min_length=1, description="Owning tenant")
    parent_id: Optional[str] = Field(default=None, description="Parent account; None for roots")
    level: int = Field(..., ge=1, le=MAX_HIERARCHY_LEVEL)
    hierarchy_path: str = Field(..., description="Materialized path, e.g. '1.2.3'")
    child_ids: List[str] = Field(default_factory=list, description="Direct children in insertion order")
    version: int = Field(default=1, ge=1)
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CreateAccountRequest(BaseModel):
    """Request model for creating an account."""
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Human-readable account name"
    )
    client_id: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[str] = Field(
        default=None,
        description="Parent account ID; omit to create a top-level account"
    )

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('name must not be blank')
        return v

    model_config = ConfigDict(extra="forbid", json_schema_extra={
        "example": {
            "name": "North Branch",
            "client_id": "client_001",
            "parent_id": "7d0f6c1e-2c55-4a57-9a0f-0c2d5f1b7e11"
        }
    })


class MoveAccountRequest(BaseModel):
    """Request model for re-parenting an account. None moves it to the tenant root."""
    new_parent_id: Optional[str] = Field(default=None)

    model_config = ConfigDict(extra="forbid")


class UpdateAccountRequest(BaseModel):
    """Non-structural edits. Structure only changes through a move."""
    name: str = Field(..., min_length=1, max_length=200)

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('name must not be blank')
        return v

    model_config = ConfigDict(extra="forbid")


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class AccountTreeNode(BaseModel):
    """Nested tree node."""
    id: str
    name: str
    level: int
    hierarchy_path: str
    client_name: Optional[str] = Field(
        default=None,
        description="Tenant label, only filled by the bulk tree builder"
    )
    children: List["AccountTreeNode"] = Field(default_factory=list)


class LevelCount(BaseModel):
    level: int
    count: int


class ParentAccountSummary(BaseModel):
    id: str
    name: str
    level: int


class BranchStats(BaseModel):
    """Statistics for a node's branch."""
    parent_account: ParentAccountSummary
    total_descendants: int
    direct_children: int
    level_breakdown: List[LevelCount]


class ClientStats(BaseModel):
    """Per-level account counts for one tenant."""
    client_id: str
    total_accounts: int
    level_breakdown: List[LevelCount]


class IntegrityViolation(BaseModel):
    account_id: str
    rule: str
    detail: str


class IntegrityReport(BaseModel):
    """Result of an invariant sweep over one tenant."""
    client_id: str
    checked_accounts: int
    violations: List[IntegrityViolation] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.violations

    def to_log_context(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "checked_accounts": self.checked_accounts,
            "violation_count": len(self.violations),
        }


AccountTreeNode.model_rebuild()
