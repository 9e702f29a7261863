"""
BigQuery-backed hierarchy store.

Table layout (dataset `settings.hierarchy_dataset`):

    accounts(id STRING, name STRING, client_id STRING, parent_id STRING,
             level INT64, hierarchy_path STRING, child_ids ARRAY<STRING>,
             version INT64, created_at TIMESTAMP, created_by STRING,
             updated_at TIMESTAMP, updated_by STRING)
    clients(client_id STRING, client_name STRING)

All statements are parameterized. Blocking client calls run in the default
executor so the event loop stays free.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from google.cloud import bigquery

from account_hierarchy.app.config import settings
from account_hierarchy.app.models import Account, LevelCount
from account_hierarchy.core.engine.bq_client import BigQueryClient, get_bigquery_client
from account_hierarchy.core.exceptions import ConcurrentModificationError
from account_hierarchy.core.stores.base import (
    AccountQuery,
    AccountUpdate,
    HierarchyStore,
    TraversalEntry,
    check_updatable,
)
from account_hierarchy.core.utils.logging import get_logger

logger = get_logger(__name__)

ACCOUNT_COLUMNS = (
    "id", "name", "client_id", "parent_id", "level", "hierarchy_path",
    "child_ids", "version", "created_at", "created_by", "updated_at", "updated_by",
)

FIELD_TYPES = {
    "name": "STRING",
    "parent_id": "STRING",
    "level": "INT64",
    "hierarchy_path": "STRING",
    "updated_at": "TIMESTAMP",
    "updated_by": "STRING",
}


def build_where_clause(query: AccountQuery) -> Tuple[str, List[Any]]:
    """Translate an AccountQuery into a WHERE clause plus its parameters."""
    clauses: List[str] = []
    params: List[Any] = []

    if query.client_id is not None:
        clauses.append("client_id = @client_id")
        params.append(bigquery.ScalarQueryParameter("client_id", "STRING", query.client_id))
    if query.parent_id is not None:
        clauses.append("parent_id = @parent_id")
        params.append(bigquery.ScalarQueryParameter("parent_id", "STRING", query.parent_id))
    if query.level is not None:
        clauses.append("level = @level")
        params.append(bigquery.ScalarQueryParameter("level", "INT64", query.level))
    if query.path_prefix is not None:
        # STARTS_WITH is literal, so the prefix needs no regex escaping
        clauses.append("STARTS_WITH(hierarchy_path, @path_prefix)")
        params.append(bigquery.ScalarQueryParameter("path_prefix", "STRING", query.path_prefix))
    if query.ids is not None:
        clauses.append("id IN UNNEST(@ids)")
        params.append(bigquery.ArrayQueryParameter("ids", "STRING", list(query.ids)))
    if query.exclude_id is not None:
        clauses.append("id != @exclude_id")
        params.append(bigquery.ScalarQueryParameter("exclude_id", "STRING", query.exclude_id))

    where = " AND ".join(clauses) if clauses else "TRUE"
    return where, params


def row_to_account(row: Dict[str, Any]) -> Account:
    """Convert a BigQuery row to an Account."""
    return Account(
        id=row["id"],
        name=row["name"],
        client_id=row["client_id"],
        parent_id=row.get("parent_id"),
        level=row["level"],
        hierarchy_path=row["hierarchy_path"],
        child_ids=list(row.get("child_ids") or []),
        version=row.get("version") or 1,
        created_at=row.get("created_at"),
        created_by=row.get("created_by"),
        updated_at=row.get("updated_at"),
        updated_by=row.get("updated_by"),
    )


class BigQueryHierarchyStore(HierarchyStore):
    """HierarchyStore over a single BigQuery accounts table."""

    def __init__(self, bq_client: Optional[BigQueryClient] = None):
        self.bq_client = bq_client or get_bigquery_client()
        self.accounts_table = settings.get_table_ref(settings.accounts_table)
        self.clients_table = settings.get_table_ref(settings.clients_table)

    async def _select(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.bq_client.query_to_list, sql, params)

    async def _execute(self, sql: str, params: Optional[List[Any]] = None) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.bq_client.execute_dml, sql, params)

    # ==========================================================================
    # Single-document operations
    # ==========================================================================

    async def insert(self, account: Account) -> str:
        sql = f"""
        INSERT INTO `{self.accounts_table}` ({", ".join(ACCOUNT_COLUMNS)})
        VALUES (@id, @name, @client_id, @parent_id, @level, @hierarchy_path,
                @child_ids, @version, @created_at, @created_by, @updated_at, @updated_by)
        """
        params = [
            bigquery.ScalarQueryParameter("id", "STRING", account.id),
            bigquery.ScalarQueryParameter("name", "STRING", account.name),
            bigquery.ScalarQueryParameter("client_id", "STRING", account.client_id),
            bigquery.ScalarQueryParameter("parent_id", "STRING", account.parent_id),
            bigquery.ScalarQueryParameter("level", "INT64", account.level),
            bigquery.ScalarQueryParameter("hierarchy_path", "STRING", account.hierarchy_path),
            bigquery.ArrayQueryParameter("child_ids", "STRING", list(account.child_ids)),
            bigquery.ScalarQueryParameter("version", "INT64", account.version),
            bigquery.ScalarQueryParameter("created_at", "TIMESTAMP", account.created_at),
            bigquery.ScalarQueryParameter("created_by", "STRING", account.created_by),
            bigquery.ScalarQueryParameter("updated_at", "TIMESTAMP", account.updated_at),
            bigquery.ScalarQueryParameter("updated_by", "STRING", account.updated_by),
        ]
        await self._execute(sql, params)
        return account.id

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        sql = f"""
        SELECT {", ".join(ACCOUNT_COLUMNS)}
        FROM `{self.accounts_table}`
        WHERE id = @account_id
        LIMIT 1
        """
        rows = await self._select(sql, [
            bigquery.ScalarQueryParameter("account_id", "STRING", account_id),
        ])
        return row_to_account(rows[0]) if rows else None

    async def find(self, query: AccountQuery) -> List[Account]:
        where, params = build_where_clause(query)
        sql = f"""
        SELECT {", ".join(ACCOUNT_COLUMNS)}
        FROM `{self.accounts_table}`
        WHERE {where}
        ORDER BY hierarchy_path, id
        """
        rows = await self._select(sql, params)
        return [row_to_account(row) for row in rows]

    async def count(self, query: AccountQuery) -> int:
        where, params = build_where_clause(query)
        sql = f"""
        SELECT COUNT(*) AS total
        FROM `{self.accounts_table}`
        WHERE {where}
        """
        rows = await self._select(sql, params)
        return rows[0]["total"] if rows else 0

    async def update_by_id(
        self,
        account_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> bool:
        check_updatable(fields)
        fields = {"updated_at": datetime.now(timezone.utc), **fields}

        assignments = [f"{name} = @f_{name}" for name in fields]
        assignments.append("version = version + 1")
        params: List[Any] = [
            bigquery.ScalarQueryParameter(f"f_{name}", FIELD_TYPES[name], value)
            for name, value in fields.items()
        ]
        params.append(bigquery.ScalarQueryParameter("account_id", "STRING", account_id))

        version_clause = ""
        if expected_version is not None:
            version_clause = "AND version = @expected_version"
            params.append(bigquery.ScalarQueryParameter("expected_version", "INT64", expected_version))

        sql = f"""
        UPDATE `{self.accounts_table}`
        SET {", ".join(assignments)}
        WHERE id = @account_id {version_clause}
        """
        affected = await self._execute(sql, params)
        if affected:
            return True

        if expected_version is not None and await self.find_by_id(account_id) is not None:
            raise ConcurrentModificationError(account_id, expected_version)
        return False

    async def delete_by_id(self, account_id: str) -> bool:
        sql = f"DELETE FROM `{self.accounts_table}` WHERE id = @account_id"
        affected = await self._execute(sql, [
            bigquery.ScalarQueryParameter("account_id", "STRING", account_id),
        ])
        return affected > 0

    async def push_child(self, parent_id: str, child_id: str) -> None:
        # Single-statement DML is atomic per row; the NOT IN guard gives set semantics
        sql = f"""
        UPDATE `{self.accounts_table}`
        SET child_ids = ARRAY_CONCAT(IFNULL(child_ids, []), [@child_id])
        WHERE id = @parent_id
          AND @child_id NOT IN UNNEST(IFNULL(child_ids, []))
        """
        await self._execute(sql, [
            bigquery.ScalarQueryParameter("parent_id", "STRING", parent_id),
            bigquery.ScalarQueryParameter("child_id", "STRING", child_id),
        ])

    async def pull_child(self, parent_id: str, child_id: str) -> None:
        sql = f"""
        UPDATE `{self.accounts_table}`
        SET child_ids = ARRAY(
            SELECT c FROM UNNEST(child_ids) AS c WITH OFFSET pos
            WHERE c != @child_id
            ORDER BY pos
        )
        WHERE id = @parent_id
        """
        await self._execute(sql, [
            bigquery.ScalarQueryParameter("parent_id", "STRING", parent_id),
            bigquery.ScalarQueryParameter("child_id", "STRING", child_id),
        ])

    # ==========================================================================
    # Multi-document operations
    # ==========================================================================

    async def bulk_update(self, updates: List[AccountUpdate]) -> int:
        """
        Apply updates with one UPDATE ... FROM UNNEST(@updates) per field set.

        The cascade after a move always sends a uniform field set, so this is
        a single statement in practice.
        """
        if not updates:
            return 0

        groups: Dict[Tuple[str, ...], List[AccountUpdate]] = {}
        for update in updates:
            check_updatable(update.fields)
            groups.setdefault(tuple(sorted(update.fields)), []).append(update)

        now = datetime.now(timezone.utc)
        changed = 0
        for field_names, group in groups.items():
            struct_values = [
                bigquery.StructQueryParameter(
                    None,
                    bigquery.ScalarQueryParameter("account_id", "STRING", u.account_id),
                    *[
                        bigquery.ScalarQueryParameter(name, FIELD_TYPES[name], u.fields[name])
                        for name in field_names
                    ],
                )
                for u in group
            ]
            assignments = [f"{name} = u.{name}" for name in field_names]
            if "updated_at" not in field_names:
                assignments.append("updated_at = @now_ts")
            assignments.append("version = t.version + 1")

            sql = f"""
            UPDATE `{self.accounts_table}` t
            SET {", ".join(assignments)}
            FROM UNNEST(@updates) AS u
            WHERE t.id = u.account_id
            """
            changed += await self._execute(sql, [
                bigquery.ArrayQueryParameter("updates", "STRUCT", struct_values),
                bigquery.ScalarQueryParameter("now_ts", "TIMESTAMP", now),
            ])

        logger.info(f"Bulk updated {changed} accounts", extra={"requested": len(updates)})
        return changed

    async def count_by_level(self, client_id: str) -> List[LevelCount]:
        sql = f"""
        SELECT level, COUNT(*) AS count
        FROM `{self.accounts_table}`
        WHERE client_id = @client_id
        GROUP BY level
        ORDER BY level
        """
        rows = await self._select(sql, [
            bigquery.ScalarQueryParameter("client_id", "STRING", client_id),
        ])
        return [LevelCount(level=row["level"], count=row["count"]) for row in rows]

    async def traverse(self, root_id: str, max_depth: int) -> List[TraversalEntry]:
        """Bounded recursive CTE over child_ids joined to the clients table in one query."""
        sql = f"""
        WITH RECURSIVE branch AS (
            SELECT id, child_ids, 0 AS depth
            FROM `{self.accounts_table}`
            WHERE id = @root_id
            UNION ALL
            SELECT child.id, child.child_ids, branch.depth + 1
            FROM branch
            CROSS JOIN UNNEST(branch.child_ids) AS child_id
            JOIN `{self.accounts_table}` AS child ON child.id = child_id
            WHERE branch.depth < @max_depth
        )
        SELECT {", ".join(f"a.{col}" for col in ACCOUNT_COLUMNS)},
               b.depth AS depth,
               c.client_name AS client_name
        FROM branch AS b
        JOIN `{self.accounts_table}` AS a ON a.id = b.id
        LEFT JOIN `{self.clients_table}` AS c ON c.client_id = a.client_id
        ORDER BY depth, a.hierarchy_path
        """
        rows = await self._select(sql, [
            bigquery.ScalarQueryParameter("root_id", "STRING", root_id),
            bigquery.ScalarQueryParameter("max_depth", "INT64", max_depth),
        ])

        entries: List[TraversalEntry] = []
        seen = set()
        for row in rows:
            # Corrupt child links can reach a node twice; keep the shallowest
            if row["id"] in seen:
                continue
            seen.add(row["id"])
            entries.append(TraversalEntry(
                account=row_to_account(row),
                depth=row["depth"],
                client_name=row.get("client_name"),
            ))
        return entries
