"""
Data source reconciliation.

A data source is identified by its connection (type, url, database), not by
its name. If Grafana already has a record for the same connection it is reused
as-is, whatever it is called. Otherwise the source is created, and if the
desired name is taken by a different connection the name gets a ``_1``,
``_2``, ... suffix.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

import structlog

from grafana_provisioner.client import GrafanaClient
from grafana_provisioner.exceptions import ConfigurationError, GrafanaAPIError, ProvisionerError
from grafana_provisioner.models import DataSourceRecord, DataSourceSpec, ResolvedDataSource

log = structlog.get_logger(__name__)


def find_same_connection(
    desired: DataSourceSpec, existing: Iterable[DataSourceRecord]
) -> Optional[DataSourceRecord]:
    key = desired.connection_key()
    return next((r for r in existing if r.connection_key() == key), None)


def unique_name(base: str, existing: Iterable[DataSourceRecord]) -> str:
    """Return *base*, or the first of ``base_1``, ``base_2``, ... no record uses."""
    taken = {r.name for r in existing}
    name, n = base, 0
    while name in taken:
        n += 1
        name = f"{base}_{n}"
    return name


def _reused(desired: DataSourceSpec, record: DataSourceRecord) -> ResolvedDataSource:
    return ResolvedDataSource(requested_name=desired.name, name=record.name, id=record.id, uid=record.uid)


async def reconcile_datasource(
    client: GrafanaClient,
    desired: DataSourceSpec,
    existing: list[DataSourceRecord],
) -> ResolvedDataSource:
    """Reuse or create the data source described by *desired*.

    *existing* is the working view of the server's data sources; a newly
    created record is appended to it, and it is refreshed in place if creation
    runs into a 409.
    """
    match = find_same_connection(desired, existing)
    if match is not None:
        log.info(
            "datasource.reused",
            name=desired.name,
            existing_name=match.name,
            id=match.id,
            uid=match.uid,
        )
        return _reused(desired, match)

    name = unique_name(desired.name, existing)
    if name != desired.name:
        log.info("datasource.renamed", name=desired.name, resolved_name=name)

    try:
        created = (await client.create_datasource(desired, name)).datasource
    except GrafanaAPIError as exc:
        if not exc.is_conflict:
            raise
        # Someone else registered it between our listing and the create.
        log.warning("datasource.conflict", name=name)
        existing[:] = await client.list_datasources()
        # Only the same connection counts; a record that merely holds the
        # name points at another database.
        record = find_same_connection(desired, existing)
        if record is not None:
            return _reused(desired, record)
        log.warning("datasource.uid_unknown", name=name)
        return ResolvedDataSource(requested_name=desired.name, name=name)

    log.info("datasource.created", name=created.name, id=created.id, uid=created.uid)
    existing.append(
        DataSourceRecord(
            id=created.id,
            uid=created.uid,
            name=created.name,
            type=desired.type,
            url=desired.url,
            database=desired.database,
            is_default=desired.is_default,
        )
    )
    return ResolvedDataSource(
        requested_name=desired.name,
        name=created.name,
        id=created.id,
        uid=created.uid,
        created=True,
    )


class DataSourceLookup:
    """Resolve a data source name referenced by a dashboard import to its UID.

    Names from the configuration take precedence; anything else is looked up
    among the data sources already registered on the server.
    """

    def __init__(
        self,
        resolved: Sequence[ResolvedDataSource],
        registered: Sequence[DataSourceRecord] = (),
    ) -> None:
        self._resolved = {r.requested_name: r for r in resolved}
        self._registered = {r.name: r for r in registered}

    def __contains__(self, name: object) -> bool:
        return name in self._resolved or name in self._registered

    @property
    def resolved(self) -> list[ResolvedDataSource]:
        return list(self._resolved.values())

    def uid_for(self, name: str) -> str:
        if name in self._resolved:
            uid = self._resolved[name].uid
            if not uid:
                raise ConfigurationError(
                    f"data source '{name}' exists but its UID could not be determined"
                )
            return uid
        if name in self._registered and self._registered[name].uid:
            return self._registered[name].uid
        raise ConfigurationError(f"data source '{name}' is not configured and not registered in Grafana")


async def reconcile_datasources(client: GrafanaClient, desired: Sequence[DataSourceSpec]) -> DataSourceLookup:
    """Reconcile every configured data source in order and return the name lookup."""
    existing = await client.list_datasources()
    log.info("datasource.listed", count=len(existing))

    if not desired:
        log.info("datasource.none_configured")

    resolved: list[ResolvedDataSource] = []
    for spec in desired:
        try:
            resolved.append(await reconcile_datasource(client, spec, existing))
        except ProvisionerError as exc:
            log.error("datasource.failed", name=spec.name, error=str(exc))
            raise
    return DataSourceLookup(resolved, existing)
