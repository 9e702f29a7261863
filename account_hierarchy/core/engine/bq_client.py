"""
BigQuery Client Service
Thread-safe BigQuery client with per-call timeouts and retry for idempotent reads.
"""

import threading
from typing import Optional, List, Dict, Any

from google.cloud import bigquery
from google.cloud.bigquery import QueryJobConfig
from google.api_core import exceptions as google_api_exceptions
from tenacity import (
    retry as tenacity_retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)

from account_hierarchy.app.config import settings
from account_hierarchy.core.exceptions import classify_exception
from account_hierarchy.core.utils.logging import get_logger

logger = get_logger(__name__)

# ============================================
# Retry Policy Configuration
# ============================================

# Only reads are retried; DML runs once so a retried write can't double-apply.
TRANSIENT_RETRY_POLICY = retry_if_exception_type((
    ConnectionError,
    TimeoutError,
    google_api_exceptions.ServiceUnavailable,
    google_api_exceptions.TooManyRequests,
    google_api_exceptions.InternalServerError,
))


class BigQueryClient:
    """
    BigQuery client shared by the hierarchy store.

    Features:
    - Lazy, thread-safe client initialization
    - Parameterized queries with a timeout on every job
    - Automatic retries with exponential backoff for SELECTs
    - Driver errors classified into the structured error hierarchy
    """

    def __init__(self, project_id: Optional[str] = None, location: Optional[str] = None):
        self.project_id = project_id or settings.gcp_project_id
        self.location = location or settings.bigquery_location
        self._client: Optional[bigquery.Client] = None
        self._client_lock = threading.Lock()

    @property
    def client(self) -> bigquery.Client:
        """Lazy-load the BigQuery client (double-checked locking)."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = bigquery.Client(
                        project=self.project_id,
                        location=self.location
                    )
                    logger.info(
                        "Initialized BigQuery client",
                        extra={
                            "project_id": self.project_id,
                            "location": self.location,
                        }
                    )
        return self._client

    def _job_config(self, parameters: Optional[List[Any]]) -> QueryJobConfig:
        job_config = QueryJobConfig(
            use_legacy_sql=False,
            job_timeout_ms=settings.bq_query_timeout_seconds * 1000
        )
        if parameters:
            job_config.query_parameters = parameters
        return job_config

    @tenacity_retry(
        stop=stop_after_attempt(settings.bq_max_retry_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=TRANSIENT_RETRY_POLICY,
        reraise=True
    )
    def _run_select(self, query: str, parameters: Optional[List[Any]]) -> List[Dict[str, Any]]:
        query_job = self.client.query(query, job_config=self._job_config(parameters))
        results = query_job.result(timeout=settings.bq_query_timeout_seconds)
        logger.debug(
            "Query completed",
            extra={"total_bytes_processed": query_job.total_bytes_processed, "cache_hit": query_job.cache_hit}
        )
        return [dict(row) for row in results]

    def query_to_list(
        self,
        query: str,
        parameters: Optional[List[Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Execute a SELECT and return all rows as dictionaries.

        Args:
            query: SQL query string
            parameters: Query parameters for parameterized queries

        Returns:
            List of row dictionaries

        Raises:
            Classified HierarchyException subclasses
        """
        try:
            return self._run_select(query, parameters)
        except Exception as e:
            structured_error = classify_exception(e)
            logger.error(
                f"BigQuery query failed: {structured_error.message}",
                extra={
                    "error_code": structured_error.error_code.value,
                    "category": structured_error.category.value,
                    "is_retryable": structured_error.is_retryable()
                }
            )
            raise structured_error from e

    def execute_dml(
        self,
        statement: str,
        parameters: Optional[List[Any]] = None
    ) -> int:
        """
        Execute an INSERT/UPDATE/DELETE/MERGE once.

        Returns:
            Number of rows affected by the statement
        """
        try:
            query_job = self.client.query(statement, job_config=self._job_config(parameters))
            query_job.result(timeout=settings.bq_query_timeout_seconds)
            affected = query_job.num_dml_affected_rows or 0
            logger.debug("DML completed", extra={"affected_rows": affected})
            return affected
        except Exception as e:
            structured_error = classify_exception(e)
            logger.error(
                f"BigQuery DML failed: {structured_error.message}",
                extra={
                    "error_code": structured_error.error_code.value,
                    "category": structured_error.category.value,
                }
            )
            raise structured_error from e


# Global singleton instance for connection reuse
_global_bq_client: Optional[BigQueryClient] = None
_global_client_lock = threading.Lock()


def get_bigquery_client() -> BigQueryClient:
    """
    Get shared BigQuery client instance (singleton).

    Tenant isolation is enforced at the query level (client_id predicates),
    not at the connection level.
    """
    global _global_bq_client

    if _global_bq_client is not None:
        return _global_bq_client

    with _global_client_lock:
        if _global_bq_client is None:
            _global_bq_client = BigQueryClient()
            logger.info("Created global BigQuery client singleton")

    return _global_bq_client
