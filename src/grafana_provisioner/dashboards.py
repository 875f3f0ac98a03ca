"""
Dashboard reconciliation.

A dashboard is identified across runs by its display name plus folder, never
by the id/uid stored in the JSON file. If Grafana already holds a dashboard
with that name in that folder, its id and uid are written into the document so
the import overwrites it; otherwise they are cleared and Grafana assigns new
ones. Imports are always sent with ``overwrite: true``.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import structlog

from grafana_provisioner.client import GrafanaClient
from grafana_provisioner.datasources import DataSourceLookup
from grafana_provisioner.exceptions import ConfigurationError, ProvisionerError
from grafana_provisioner.folders import FolderMap
from grafana_provisioner.models import GENERAL_FOLDER, DashboardSpec, ImportMapping, SearchHit, is_general

log = structlog.get_logger(__name__)

IMPORT_MESSAGE = "Automated provisioning by grafana-provisioner"

# Folder UID Grafana treats as the default ("General") location.
DEFAULT_FOLDER_UID = ""


class DashboardDocument:
    """A parsed dashboard JSON model.

    The document is kept as-is; only ``title``, ``id``, ``uid`` and the
    ``__inputs`` list are read or written.
    """

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = data

    @classmethod
    def load(cls, path: Path) -> "DashboardDocument":
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"failed to read dashboard file '{path}': {exc}") from exc
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ConfigurationError(f"failed to parse dashboard JSON '{path}': {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"dashboard file '{path}' must contain a JSON object")
        return cls(data)

    @property
    def title(self) -> Optional[str]:
        return self._data.get("title")

    @property
    def id(self) -> Optional[int]:
        return self._data.get("id")

    @property
    def uid(self) -> Optional[str]:
        return self._data.get("uid")

    def set_identity(self, title: str, id: Optional[int], uid: Optional[str]) -> None:
        self._data["title"] = title
        self._data["id"] = id
        self._data["uid"] = uid

    def inputs(self) -> list[dict[str, Any]]:
        """Well-formed ``__inputs`` entries: objects with a string ``name``."""
        raw = self._data.get("__inputs")
        if not isinstance(raw, list):
            return []
        return [e for e in raw if isinstance(e, dict) and isinstance(e.get("name"), str)]

    def apply_inputs(self, values: Mapping[str, str]) -> list[dict[str, Any]]:
        """Set ``value`` on every input named in *values*; leave the rest alone.

        Entries are updated in place, so the document and the returned list
        agree.
        """
        entries = self.inputs()
        for entry in entries:
            if entry["name"] in values:
                entry["value"] = values[entry["name"]]
        return entries

    def to_dict(self) -> dict[str, Any]:
        return self._data


def resolve_folder_uid(folder: str, folder_map: FolderMap) -> str:
    """Folder UID for *folder*; ``General`` falls back to the default location."""
    if is_general(folder):
        mapped = folder_map.get(GENERAL_FOLDER)
        return mapped.uid if mapped is not None else DEFAULT_FOLDER_UID

    mapped = folder_map.get(folder)
    if mapped is None:
        raise ConfigurationError(
            f"dashboard folder '{folder}' is not defined in the 'folders' configuration list"
        )
    return mapped.uid


def _in_folder(hit: SearchHit, folder: str) -> bool:
    if hit.folder_title == folder:
        return True
    return is_general(folder) and (hit.folder_title == "" or is_general(hit.folder_title))


def find_existing(hits: Iterable[SearchHit], name: str, folder: str) -> Optional[SearchHit]:
    """First dashboard (not folder) titled *name* inside *folder*."""
    return next(
        (h for h in hits if h.is_dashboard and h.title == name and _in_folder(h, folder)),
        None,
    )


def build_substitutions(imports: Sequence[ImportMapping], lookup: DataSourceLookup) -> dict[str, str]:
    return {m.placeholder: lookup.uid_for(m.datasource) for m in imports}


def build_import_request(
    document: DashboardDocument,
    inputs: list[dict[str, Any]],
    folder_uid: str,
) -> dict[str, Any]:
    return {
        "dashboard": document.to_dict(),
        "inputs": inputs,
        "folderUid": folder_uid,
        "overwrite": True,
        "message": IMPORT_MESSAGE,
    }


async def reconcile_dashboard(
    client: GrafanaClient,
    desired: DashboardSpec,
    folder_map: FolderMap,
    lookup: DataSourceLookup,
) -> None:
    # Configuration problems fail before any request for this dashboard.
    folder_uid = resolve_folder_uid(desired.folder, folder_map)
    substitutions = build_substitutions(desired.imports, lookup)

    document = DashboardDocument.load(desired.file)
    log.debug(
        "dashboard.read",
        name=desired.name,
        file=str(desired.file),
        file_title=document.title,
        file_id=document.id,
        file_uid=document.uid,
    )

    existing = find_existing(await client.search(), desired.name, desired.folder)
    if existing is not None:
        log.info("dashboard.found", name=desired.name, folder=desired.folder, id=existing.id, uid=existing.uid)
        document.set_identity(desired.name, existing.id, existing.uid)
    else:
        log.info("dashboard.new", name=desired.name, folder=desired.folder)
        document.set_identity(desired.name, None, None)

    inputs = document.apply_inputs(substitutions)
    await client.import_dashboard(build_import_request(document, inputs, folder_uid))
    log.info("dashboard.imported", name=desired.name, folder=desired.folder, folder_uid=folder_uid)


async def provision_dashboards(
    client: GrafanaClient,
    desired: Sequence[DashboardSpec],
    folder_map: FolderMap,
    lookup: DataSourceLookup,
) -> list[str]:
    """Import every configured dashboard in order; the first failure propagates."""
    if not desired:
        log.info("dashboard.none_configured")
        return []
    for spec in desired:
        try:
            await reconcile_dashboard(client, spec, folder_map, lookup)
        except ProvisionerError as exc:
            log.error("dashboard.failed", name=spec.name, folder=spec.folder, error=str(exc))
            raise
    return [spec.name for spec in desired]
