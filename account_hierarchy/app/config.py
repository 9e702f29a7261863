"""
Account Hierarchy Configuration
Centralized settings using Pydantic Settings with environment variable support.

ENVIRONMENT VARIABLES REFERENCE
===============================

All settings can be configured via environment variables (uppercase, underscore-separated).
Example: `log_level` -> `LOG_LEVEL`

APPLICATION SETTINGS:
--------------------
ENVIRONMENT             - Runtime environment: development|staging|production (default: "development")
LOG_LEVEL               - Logging level: DEBUG|INFO|WARNING|ERROR|CRITICAL (default: "INFO")

GCP CONFIGURATION:
------------------
GCP_PROJECT_ID          - Google Cloud Project ID (default: "local-dev-project")
BIGQUERY_LOCATION       - BigQuery dataset location (default: "US")
GOOGLE_APPLICATION_CREDENTIALS - Path to GCP service account JSON file

HIERARCHY STORE:
----------------
HIERARCHY_STORE_BACKEND - bigquery|memory (default: "bigquery")
HIERARCHY_DATASET       - Dataset holding the accounts and clients tables (default: "organizations")
ACCOUNTS_TABLE          - Accounts table name (default: "accounts")
CLIENTS_TABLE           - Clients table name used for tenant labels (default: "clients")
BQ_QUERY_TIMEOUT_SECONDS - Per-query timeout (default: 60)
BQ_MAX_RETRY_ATTEMPTS   - Retry attempts for idempotent reads (default: 3)

TELEMETRY:
----------
TELEMETRY_ENABLED       - Post operation events to the logs service (default: false)
TELEMETRY_URL           - Logs service endpoint (default: "http://localhost:9008/logs")
TELEMETRY_TIMEOUT_SECONDS - HTTP timeout for telemetry posts (default: 5.0)
"""

import os
from functools import lru_cache
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables.
    Supports .env file loading in development.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================
    # Application Settings
    # ============================================
    app_name: str = Field(
        default="account-hierarchy",
        description="Application name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Runtime environment"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )

    # ============================================
    # GCP Configuration
    # ============================================
    gcp_project_id: str = Field(default="local-dev-project", description="Google Cloud Project ID - set via GCP_PROJECT_ID env var")
    bigquery_location: str = Field(default="US", description="BigQuery dataset location")
    google_application_credentials: Optional[str] = Field(
        default=None,
        description="Path to GCP service account JSON"
    )

    # ============================================
    # Hierarchy Store
    # ============================================
    hierarchy_store_backend: str = Field(
        default="bigquery",
        pattern="^(bigquery|memory)$",
        description="Backend for persisted accounts"
    )
    hierarchy_dataset: str = Field(default="organizations", description="Dataset holding hierarchy tables")
    accounts_table: str = Field(default="accounts")
    clients_table: str = Field(default="clients", description="Tenant records joined for tree labels")
    bq_query_timeout_seconds: int = Field(default=60, ge=5)
    bq_max_retry_attempts: int = Field(default=3, ge=1, le=10)

    # Fixed by the data model; exposed for error messages and traversal depth
    max_hierarchy_level: int = Field(default=5, ge=5, le=5)

    # ============================================
    # Telemetry
    # ============================================
    telemetry_enabled: bool = Field(
        default=False,
        description="Post structured operation events to the logs service"
    )
    telemetry_url: str = Field(default="http://localhost:9008/logs")
    telemetry_timeout_seconds: float = Field(default=5.0, gt=0, le=60)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    def get_table_ref(self, table_name: str) -> str:
        """Fully qualified `project.dataset.table` reference."""
        return f"{self.gcp_project_id}.{self.hierarchy_dataset}.{table_name}"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Use LRU cache to avoid reloading environment variables.
    """
    settings_instance = Settings()

    # Google Cloud client libraries read credentials from the environment
    if settings_instance.google_application_credentials:
        creds_path = settings_instance.google_application_credentials
        if os.path.exists(creds_path):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = creds_path

    return settings_instance


# Convenience export
settings = get_settings()
