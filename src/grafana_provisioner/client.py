"""
Async HTTP client for the Grafana REST API.

All endpoints live under <grafana_url>/api/.
Authentication: Authorization: Bearer <token>

Every call is retried up to ``retries`` attempts with a fixed ``retry_delay``
between them when the failure is transient (connection errors, timeouts,
429 and 5xx). Other non-2xx responses raise ``GrafanaAPIError`` on the first
attempt, so a 409 reaches the caller immediately.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError

from grafana_provisioner.config import GrafanaConfig
from grafana_provisioner.exceptions import GrafanaAPIError, GrafanaResponseError
from grafana_provisioner.models import (
    CreateDataSourceResponse,
    DataSourceRecord,
    DataSourceSpec,
    FolderRecord,
    SearchHit,
)

log = structlog.get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
T = TypeVar("T")

# Sent with every data source we create.
POSTGRES_VERSION = 1300
_ACCESS_MODE = "proxy"


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _parse(adapter: TypeAdapter[T], data: Any, call: str) -> T:
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        raise GrafanaResponseError(call, str(exc)) from exc


_DATASOURCES = TypeAdapter(list[DataSourceRecord])
_FOLDERS = TypeAdapter(list[FolderRecord])
_SEARCH = TypeAdapter(list[SearchHit])
_CREATED_DATASOURCE = TypeAdapter(CreateDataSourceResponse)
_FOLDER = TypeAdapter(FolderRecord)


def datasource_payload(spec: DataSourceSpec, name: str) -> dict[str, Any]:
    """Build the ``POST /api/datasources`` body; the password only goes in secureJsonData."""
    return {
        "name": name,
        "type": spec.type,
        "access": _ACCESS_MODE,
        "url": spec.url,
        "database": spec.database,
        "user": spec.user,
        "isDefault": spec.is_default,
        "jsonData": {
            "sslmode": spec.ssl_mode,
            "postgresVersion": POSTGRES_VERSION,
            "timescaledb": False,
        },
        "secureJsonData": {"password": spec.password},
    }


class GrafanaClient:
    """Async context-manager wrapper around the Grafana HTTP API."""

    def __init__(self, settings: GrafanaConfig, sleep: SleepFunc = asyncio.sleep) -> None:
        self._settings = settings
        self._base_url = settings.url.rstrip("/") + "/api/"
        self._headers = {
            "Authorization": f"Bearer {settings.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def retries(self) -> int:
        return self._settings.retries

    @property
    def retry_delay(self) -> float:
        return self._settings.retry_delay

    async def pause(self) -> None:
        """Sleep for the configured retry delay."""
        await self._sleep(self.retry_delay)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "GrafanaClient":
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._settings.timeout,
        )
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client_or_raise(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GrafanaClient must be used as an async context manager")
        return self._client

    async def request(self, method: str, path: str, json: Any = None) -> Any:
        """Execute one API call with retries and return the decoded JSON body.

        Raises ``GrafanaAPIError`` when the call fails for good and
        ``GrafanaResponseError`` when a 2xx body is not JSON.
        """
        client = self._client_or_raise()
        attempts = self._settings.retries
        last_error: Optional[GrafanaAPIError] = None

        for attempt in range(1, attempts + 1):
            t0 = time.monotonic()
            try:
                response = await client.request(method, path, json=json)
            except httpx.TransportError as exc:
                last_error = GrafanaAPIError(0, str(exc) or type(exc).__name__, method, path)
                log.warning(
                    "grafana.request_failed",
                    method=method,
                    path=path,
                    attempt=attempt,
                    attempts=attempts,
                    error=last_error.message,
                )
            else:
                elapsed = round((time.monotonic() - t0) * 1000)
                log.info(
                    "grafana.api_call",
                    method=method,
                    path=path,
                    status=response.status_code,
                    elapsed_ms=elapsed,
                    attempt=attempt,
                )
                if response.is_success:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise GrafanaResponseError(f"{method} {path}", "body is not valid JSON") from exc

                error = GrafanaAPIError(response.status_code, response.text[:500], method, path)
                if not _is_retryable(response.status_code):
                    raise error
                last_error = error
                log.warning(
                    "grafana.api_error",
                    method=method,
                    path=path,
                    status=response.status_code,
                    attempt=attempt,
                    attempts=attempts,
                )

            if attempt < attempts:
                await self.pause()

        if last_error is None:
            raise GrafanaAPIError(0, f"no attempt made ({attempts} retries configured)", method, path)
        raise last_error

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def probe_health(self) -> bool:
        """Single ``GET /api/health``; True iff Grafana answered 200."""
        client = self._client_or_raise()
        try:
            response = await client.get("health")
        except httpx.TransportError as exc:
            log.debug("grafana.health_unreachable", error=str(exc) or type(exc).__name__)
            return False
        log.debug("grafana.health", status=response.status_code)
        return response.status_code == 200

    # ------------------------------------------------------------------
    # Data sources
    # ------------------------------------------------------------------

    async def list_datasources(self) -> list[DataSourceRecord]:
        data = await self.request("GET", "datasources")
        return _parse(_DATASOURCES, data, "GET /api/datasources")

    async def create_datasource(self, spec: DataSourceSpec, name: str) -> CreateDataSourceResponse:
        """Register *spec* under *name* (which may differ from ``spec.name``)."""
        data = await self.request("POST", "datasources", json=datasource_payload(spec, name))
        return _parse(_CREATED_DATASOURCE, data, "POST /api/datasources")

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def list_folders(self) -> list[FolderRecord]:
        data = await self.request("GET", "folders")
        return _parse(_FOLDERS, data, "GET /api/folders")

    async def create_folder(self, title: str) -> FolderRecord:
        data = await self.request("POST", "folders", json={"title": title})
        return _parse(_FOLDER, data, "POST /api/folders")

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    async def search(self) -> list[SearchHit]:
        """Full ``GET /api/search`` index: dashboards and folders."""
        data = await self.request("GET", "search")
        return _parse(_SEARCH, data, "GET /api/search")

    async def import_dashboard(self, body: dict[str, Any]) -> Any:
        return await self.request("POST", "dashboards/import", json=body)
