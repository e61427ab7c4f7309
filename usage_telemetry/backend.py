"""
Remote storage backends for telemetry batches.

The batch processor only needs a bulk insert per table. Any failure is
raised as a TelemetryError so the retry wrapper can treat every transport
the same way.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from usage_telemetry.errors import TelemetryError, TelemetryErrorType

logger = logging.getLogger(__name__)


@runtime_checkable
class TelemetryBackend(Protocol):
    """Protocol for telemetry collection backends."""

    async def insert(self, table: str, records: List[Dict[str, Any]]) -> None:
        """
        Insert a batch of records into a table.

        Promises:
        - Returns None on success
        - Raises TelemetryError (NETWORK_ERROR) on any failure
        """
        ...


class SupabaseBackend:
    """
    PostgREST/Supabase backend.

    Inserts batches with POST {url}/rest/v1/{table}. Sessions are not
    persisted: every insert uses a short-lived client.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize backend.

        Args:
            url: Project base URL
            api_key: Anonymous (insert-only) API key
            timeout_seconds: HTTP timeout per request
            transport: Optional httpx transport, mainly for tests
        """
        if not url or not api_key:
            raise TelemetryError(
                TelemetryErrorType.INITIALIZATION_ERROR,
                "Telemetry backend URL and key are required",
            )
        if not url.startswith(("http://", "https://")):
            raise TelemetryError(
                TelemetryErrorType.INITIALIZATION_ERROR,
                "Telemetry backend URL must be http(s)",
            )

        self.base_url = url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    async def insert(self, table: str, records: List[Dict[str, Any]]) -> None:
        """Insert records, raising TelemetryError on failure."""
        if not records:
            return

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/rest/v1/{table}",
                    json=records,
                    headers=self._headers,
                )
        except httpx.HTTPError as e:
            raise TelemetryError(
                TelemetryErrorType.NETWORK_ERROR,
                f"Insert into {table} failed",
                {"error": str(e)},
                retryable=True,
            ) from e

        if response.status_code >= 300:
            raise TelemetryError(
                TelemetryErrorType.NETWORK_ERROR,
                f"Insert into {table} returned HTTP {response.status_code}",
                {"status_code": response.status_code, "body": response.text[:200]},
                retryable=True,
            )

        logger.debug(f"Inserted {len(records)} records into {table}")
