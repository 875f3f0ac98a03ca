"""
Pydantic models for the desired state (from configuration) and the observed
state (from Grafana API responses).

API models accept Grafana's camelCase field names and ignore fields we don't
use, so new Grafana versions adding keys don't break parsing.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

POSTGRES_TYPE = "grafana-postgresql-datasource"
GENERAL_FOLDER = "General"
DASHBOARD_HIT_TYPE = "dash-db"


def is_general(folder: str) -> bool:
    """True for the server's default/root folder name (case-insensitive)."""
    return folder.lower() == GENERAL_FOLDER.lower()


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------


class DataSourceSpec(BaseModel):
    """A PostgreSQL data source we want registered."""
    name: str = Field(..., min_length=1)
    type: str = POSTGRES_TYPE
    url: str = Field(..., description="host:port")
    database: str
    user: str
    password: str = Field(..., repr=False)
    ssl_mode: str = "disable"
    is_default: bool = False

    def connection_key(self) -> tuple[str, str, str]:
        return (self.type, self.url, self.database)


class DataSourceRecord(_ApiModel):
    """A data source as returned by ``GET /api/datasources``."""
    id: int
    uid: str = ""
    name: str
    type: str = ""
    url: str = ""
    database: str = ""
    is_default: bool = Field(default=False, alias="isDefault")

    @model_validator(mode="before")
    @classmethod
    def flatten_database(cls, data: Any) -> Any:
        # Newer Grafana versions keep the database name under jsonData.
        if isinstance(data, dict) and not data.get("database"):
            json_data = data.get("jsonData") or {}
            if isinstance(json_data, dict) and json_data.get("database"):
                data = {**data, "database": json_data["database"]}
        return data

    def connection_key(self) -> tuple[str, str, str]:
        return (self.type, self.url, self.database)


class CreatedDataSource(_ApiModel):
    id: int
    uid: str = ""
    name: str


class CreateDataSourceResponse(_ApiModel):
    """Body of a successful ``POST /api/datasources``."""
    datasource: CreatedDataSource
    message: str = ""


class ResolvedDataSource(BaseModel):
    """Outcome of reconciling one configured data source.

    ``uid`` is ``None`` only when creation hit a 409 and a re-query still
    could not find the record.
    """
    requested_name: str
    name: str
    id: Optional[int] = None
    uid: Optional[str] = None
    created: bool = False


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------


class FolderSpec(BaseModel):
    name: str = Field(..., min_length=1)


class FolderRecord(_ApiModel):
    """A folder as returned by ``GET /api/folders`` / ``POST /api/folders``."""
    id: int
    uid: str
    title: str
    url: str = ""


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


class ImportMapping(BaseModel):
    """Dashboard input placeholder → configured data source name."""
    placeholder: str = Field(..., min_length=1)
    datasource: str = Field(..., min_length=1)


class DashboardSpec(BaseModel):
    name: str = Field(..., min_length=1)
    folder: str = GENERAL_FOLDER
    file: Path
    imports: list[ImportMapping] = []


class SearchHit(_ApiModel):
    """One entry of ``GET /api/search`` (dashboards and folders alike)."""
    id: int
    uid: str = ""
    title: str = ""
    type: str = ""
    folder_id: Optional[int] = Field(default=None, alias="folderId")
    folder_uid: Optional[str] = Field(default=None, alias="folderUid")
    folder_title: str = Field(default="", alias="folderTitle")

    @property
    def is_dashboard(self) -> bool:
        return self.type == DASHBOARD_HIT_TYPE
