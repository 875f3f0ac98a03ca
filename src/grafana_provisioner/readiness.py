"""Wait for the Grafana API to answer ``GET /api/health`` with 200."""
from __future__ import annotations

import structlog

from grafana_provisioner.client import GrafanaClient
from grafana_provisioner.exceptions import GrafanaAPIError

log = structlog.get_logger(__name__)


async def wait_until_ready(client: GrafanaClient) -> None:
    """Poll the health endpoint up to ``client.retries`` times.

    Sleeps ``client.retry_delay`` between polls. Raises ``GrafanaAPIError``
    once the budget is spent.
    """
    log.info("grafana.waiting_for_api", attempts=client.retries, delay=client.retry_delay)
    for attempt in range(1, client.retries + 1):
        if await client.probe_health():
            log.info("grafana.ready", attempt=attempt)
            return
        log.warning("grafana.not_ready", attempt=attempt, attempts=client.retries)
        if attempt < client.retries:
            await client.pause()

    raise GrafanaAPIError(0, f"Grafana API not ready after {client.retries} attempts", "GET", "health")
