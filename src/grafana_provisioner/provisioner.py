"""
Provisioning run: AwaitReady → DataSources → Folders → Dashboards → Done.

Stages run strictly in order. The first error stops the run and is re-raised
as ``ProvisioningError`` carrying the stage it happened in; nothing from later
stages is attempted.
"""
from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field

import structlog

from grafana_provisioner.client import GrafanaClient, SleepFunc
from grafana_provisioner.config import AppConfig
from grafana_provisioner.dashboards import provision_dashboards
from grafana_provisioner.datasources import DataSourceLookup, reconcile_datasources
from grafana_provisioner.exceptions import ProvisionerError
from grafana_provisioner.folders import FolderMap, provision_folders
from grafana_provisioner.models import ResolvedDataSource
from grafana_provisioner.readiness import wait_until_ready

log = structlog.get_logger(__name__)


class Stage(str, enum.Enum):
    AWAIT_READY = "await_ready"
    DATASOURCES = "datasources"
    FOLDERS = "folders"
    DASHBOARDS = "dashboards"
    DONE = "done"


class ProvisioningError(ProvisionerError):
    """Terminal ``Failed(stage, cause)`` state of a run."""

    def __init__(self, stage: Stage, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"provisioning failed at stage '{stage.value}': {cause}")


@dataclass
class ProvisioningResult:
    datasources: list[ResolvedDataSource] = field(default_factory=list)
    folders: FolderMap = field(default_factory=dict)
    dashboards: list[str] = field(default_factory=list)
    stage: Stage = Stage.DONE


class Provisioner:
    """Drives one provisioning pass against an open ``GrafanaClient``."""

    def __init__(self, client: GrafanaClient, config: AppConfig) -> None:
        self._client = client
        self._config = config
        self.stage = Stage.AWAIT_READY

    def _enter(self, stage: Stage) -> None:
        self.stage = stage
        log.info("provisioning.stage", stage=stage.value)

    async def run(self) -> ProvisioningResult:
        result = ProvisioningResult()
        try:
            self._enter(Stage.AWAIT_READY)
            await wait_until_ready(self._client)

            self._enter(Stage.DATASOURCES)
            lookup: DataSourceLookup = await reconcile_datasources(
                self._client, self._config.datasource_specs()
            )
            result.datasources = lookup.resolved

            self._enter(Stage.FOLDERS)
            result.folders = await provision_folders(self._client, self._config.folder_specs())

            self._enter(Stage.DASHBOARDS)
            result.dashboards = await provision_dashboards(
                self._client, self._config.dashboard_specs(), result.folders, lookup
            )
        except ProvisionerError as exc:
            raise ProvisioningError(self.stage, exc) from exc

        self._enter(Stage.DONE)
        return result


async def run_provisioning(config: AppConfig, sleep: SleepFunc = asyncio.sleep) -> ProvisioningResult:
    """Open a client for *config* and run every stage once."""
    log.info("provisioning.starting", grafana_url=config.grafana.url)
    async with GrafanaClient(config.grafana, sleep=sleep) as client:
        result = await Provisioner(client, config).run()
    log.info(
        "provisioning.completed",
        datasources=len(result.datasources),
        folders=len(result.folders),
        dashboards=len(result.dashboards),
    )
    return result
