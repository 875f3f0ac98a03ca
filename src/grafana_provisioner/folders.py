"""Folder reconciliation: create missing folders and map titles to records."""
from __future__ import annotations

from typing import Sequence

import structlog

from grafana_provisioner.client import GrafanaClient
from grafana_provisioner.exceptions import GrafanaAPIError
from grafana_provisioner.models import FolderRecord, FolderSpec

log = structlog.get_logger(__name__)

FolderMap = dict[str, FolderRecord]


async def _create_folder(client: GrafanaClient, title: str) -> FolderRecord:
    try:
        folder = await client.create_folder(title)
    except GrafanaAPIError as exc:
        if not exc.is_conflict:
            raise
        # Title taken although our listing didn't show it: read again.
        log.warning("folder.conflict", title=title)
        found = next((f for f in await client.list_folders() if f.title == title), None)
        if found is None:
            raise
        log.info("folder.reused", title=found.title, uid=found.uid, after_conflict=True)
        return found

    log.info("folder.created", title=folder.title, id=folder.id, uid=folder.uid)
    return folder


async def reconcile_folders(
    client: GrafanaClient,
    desired: Sequence[FolderSpec],
    existing: Sequence[FolderRecord],
) -> FolderMap:
    """Ensure every folder in *desired* exists.

    Titles match exactly (case-sensitive). Returns the mapping title → record
    for all configured folders, whether reused or created.
    """
    by_title = {f.title: f for f in existing}
    mapping: FolderMap = {}

    for spec in desired:
        folder = by_title.get(spec.name)
        if folder is not None:
            log.info("folder.reused", title=folder.title, uid=folder.uid)
        else:
            folder = await _create_folder(client, spec.name)
            by_title[folder.title] = folder
        mapping[folder.title] = folder

    return mapping


async def provision_folders(client: GrafanaClient, desired: Sequence[FolderSpec]) -> FolderMap:
    if not desired:
        log.info("folder.none_configured")
        return {}
    existing = await client.list_folders()
    log.info("folder.listed", count=len(existing))
    return await reconcile_folders(client, desired, existing)
