"""
Telemetry sink for hierarchy operations.

Each engine call emits one structured event after it finishes. Emission
is best-effort: failures are logged at WARNING and never reach the caller.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from account_hierarchy.app.config import settings

logger = logging.getLogger(__name__)


class TelemetryEvent(BaseModel):
    """One engine call's outcome."""
    operation: str
    resource: str = "ACCOUNT"
    outcome: str = Field(..., pattern="^(success|failure)$")
    status_code: int = 200
    message: str
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    response_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_error(self) -> bool:
        return self.outcome == "failure"


class TelemetrySink(ABC):
    """Destination for telemetry events."""

    @abstractmethod
    async def emit(self, event: TelemetryEvent) -> None:
        """Deliver an event. Implementations must not raise."""

    async def aclose(self) -> None:
        """Release any held resources."""


class NullTelemetrySink(TelemetrySink):
    """Drops every event."""

    async def emit(self, event: TelemetryEvent) -> None:
        return None


class HttpTelemetrySink(TelemetrySink):
    """
    Posts events as JSON to the logs service.

    Notes:
        - Every post carries a timeout
        - Non-2xx responses, timeouts and transport errors are logged and dropped
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url or settings.telemetry_url
        self.timeout_seconds = timeout_seconds or settings.telemetry_timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def emit(self, event: TelemetryEvent) -> None:
        payload = event.model_dump(mode="json")
        payload["is_error"] = event.is_error
        payload["service"] = settings.app_name

        try:
            response = await self._get_client().post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
            if response.status_code >= 400:
                logger.warning(
                    f"Telemetry sink rejected event for {event.operation}",
                    extra={"status_code": response.status_code, "operation": event.operation}
                )
        except httpx.TimeoutException as e:
            logger.warning(
                f"Timeout sending telemetry event: {e}",
                extra={"operation": event.operation}
            )
        except Exception as e:
            logger.warning(
                f"Failed to send telemetry event: {e}",
                extra={"operation": event.operation, "error_type": type(e).__name__}
            )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def get_telemetry_sink() -> TelemetrySink:
    """Sink for the current settings."""
    if settings.telemetry_enabled:
        return HttpTelemetrySink()
    return NullTelemetrySink()
