"""
Configuration loading for grafana-provisioner.

Resolution order:
  1. ``--config`` on the command line
  2. GRAFANA_PROVISIONER_CONFIG environment variable
  3. ./config.yaml

Before the YAML is parsed, a ``.env`` file in the working directory is loaded
(existing environment variables win) and every ``${VAR}`` / ``$VAR`` reference
in the raw text is replaced with its value. Unset variables expand to the empty
string, so a missing secret surfaces as a validation error on its field.

Secrets are never written back anywhere and never appear in ``repr``.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from grafana_provisioner.exceptions import ConfigurationError
from grafana_provisioner.models import DashboardSpec, DataSourceSpec, FolderSpec, ImportMapping

log = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILE = Path("config.yaml")
CONFIG_ENV_VAR = "GRAFANA_PROVISIONER_CONFIG"

_ENV_REF_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def expand_env(text: str, environ: Optional[dict[str, str]] = None) -> str:
    """Replace ``${VAR}`` and ``$VAR`` with values from *environ* (default: os.environ)."""
    env = os.environ if environ is None else environ

    def _sub(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        return env.get(name, "")

    return _ENV_REF_RE.sub(_sub, text)


def parse_duration(value: Any) -> float:
    """Parse ``30``, ``2.5``, ``500ms``, ``5s`` or ``1m30s`` into seconds."""
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '5s'")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError("duration must be a number or a string like '5s'")

    raw = value.strip()
    try:
        return float(raw)
    except ValueError:
        pass

    parts = _DURATION_PART_RE.findall(raw)
    if not parts or "".join(n + u for n, u in parts) != raw:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


# ---------------------------------------------------------------------------
# Config file schema
# ---------------------------------------------------------------------------


class LogConfig(BaseModel):
    level: str = "info"
    format: str = "json"
    file: Optional[str] = None

    @field_validator("level")
    @classmethod
    def check_level(cls, v: str) -> str:
        v = v.lower()
        if v not in ("debug", "info", "warn", "warning", "error"):
            raise ValueError("level must be one of debug, info, warn, error")
        return "warning" if v == "warn" else v

    @field_validator("format")
    @classmethod
    def check_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("format must be 'json' or 'text'")
        return v

    @field_validator("file")
    @classmethod
    def blank_file_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class GrafanaConfig(BaseModel):
    """Connection and retry policy for the Grafana API."""
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1, repr=False)
    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, gt=0)
    retry_delay: float = Field(default=5.0, gt=0, alias="retry-delay")

    @field_validator("url")
    @classmethod
    def strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("timeout", "retry_delay", mode="before")
    @classmethod
    def duration(cls, v: Any) -> float:
        return parse_duration(v)


class FolderConfig(BaseModel):
    name: str = Field(..., min_length=1)


class DataSourceConfig(BaseModel):
    name: str = Field(..., min_length=1)
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    user: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)
    dbname: str = Field(..., min_length=1)
    sslmode: str = "disable"

    @field_validator("sslmode")
    @classmethod
    def check_sslmode(cls, v: str) -> str:
        if v not in ("disable", "require", "verify-ca", "verify-full"):
            raise ValueError("sslmode must be one of disable, require, verify-ca, verify-full")
        return v

    def to_spec(self) -> DataSourceSpec:
        return DataSourceSpec(
            name=self.name,
            url=f"{self.host}:{self.port}",
            database=self.dbname,
            user=self.user,
            password=self.password,
            ssl_mode=self.sslmode,
        )


class ImportConfig(BaseModel):
    name: str = Field(..., min_length=1)
    datasource: str = Field(..., min_length=1)


class DashboardConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    file: str = Field(..., min_length=1)
    folder: str = "General"
    imports: list[ImportConfig] = Field(default_factory=list)
    # Older configs declare a single mapping as `datasource` + `import-var`.
    datasource: Optional[str] = None
    import_var: Optional[str] = Field(default=None, alias="import-var")

    @field_validator("folder", mode="before")
    @classmethod
    def default_folder(cls, v: Any) -> Any:
        return v or "General"

    @model_validator(mode="after")
    def fold_legacy_import(self) -> "DashboardConfig":
        if self.datasource or self.import_var:
            if not (self.datasource and self.import_var):
                raise ValueError("'datasource' and 'import-var' must be given together")
            if not any(i.name == self.import_var for i in self.imports):
                self.imports.append(ImportConfig(name=self.import_var, datasource=self.datasource))
        return self

    def to_spec(self) -> DashboardSpec:
        return DashboardSpec(
            name=self.name,
            folder=self.folder,
            file=Path(self.file),
            imports=[ImportMapping(placeholder=i.name, datasource=i.datasource) for i in self.imports],
        )


class AppConfig(BaseModel):
    """Root of the configuration file."""

    log: LogConfig = Field(default_factory=LogConfig)
    grafana: GrafanaConfig
    folders: list[FolderConfig] = Field(default_factory=list)
    datasources: list[DataSourceConfig] = Field(default_factory=list)
    dashboards: list[DashboardConfig] = Field(default_factory=list)

    @field_validator("folders", "datasources", "dashboards", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @model_validator(mode="after")
    def unique_names(self) -> "AppConfig":
        for kind, names in (
            ("datasource", [d.name for d in self.datasources]),
            ("folder", [f.name for f in self.folders]),
        ):
            seen: set[str] = set()
            for name in names:
                if name in seen:
                    raise ValueError(f"duplicate {kind} name {name!r}")
                seen.add(name)
        return self

    def datasource_specs(self) -> list[DataSourceSpec]:
        return [d.to_spec() for d in self.datasources]

    def folder_specs(self) -> list[FolderSpec]:
        return [FolderSpec(name=f.name) for f in self.folders]

    def dashboard_specs(self) -> list[DashboardSpec]:
        return [d.to_spec() for d in self.dashboards]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def resolve_config_path(cli_path: Optional[str] = None) -> Path:
    return Path(cli_path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)


def load_config(path: Path, dotenv_path: Optional[Path] = None) -> AppConfig:
    """Read, expand and validate the configuration file at *path*.

    Raises ``ConfigurationError`` if the file is missing, is not valid YAML,
    or fails validation.
    """
    if load_dotenv(dotenv_path=dotenv_path or Path(".env"), override=False):
        log.debug("config.dotenv_loaded")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"failed to read config file '{path}': {exc}") from exc

    try:
        data = yaml.safe_load(expand_env(raw)) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"failed to parse config file '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file '{path}' must contain a mapping at the top level")

    try:
        cfg = AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"config validation error in '{path}': {exc}") from exc

    log.info(
        "config.loaded",
        path=str(path),
        grafana_url=cfg.grafana.url,
        datasources=len(cfg.datasources),
        folders=len(cfg.folders),
        dashboards=len(cfg.dashboards),
    )
    return cfg
