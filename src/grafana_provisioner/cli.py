"""
grafana-provisioner command line entry point.

Run:
    grafana-provisioner --config config.yaml
    # or
    python -m grafana_provisioner

Exit status is 0 when every stage succeeded and 1 otherwise.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional, Sequence

import structlog

from grafana_provisioner import __version__
from grafana_provisioner.config import CONFIG_ENV_VAR, load_config, resolve_config_path
from grafana_provisioner.exceptions import ConfigurationError
from grafana_provisioner.logging_setup import close_log_file, configure_logging
from grafana_provisioner.provisioner import ProvisioningError, run_provisioning

log = structlog.get_logger(__name__)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="grafana-provisioner",
        description="Create or reconcile Grafana data sources, folders and dashboards.",
    )
    parser.add_argument(
        "-c",
        "--config",
        help=f"path to the YAML configuration (default: ${CONFIG_ENV_VAR} or ./config.yaml)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    # Until the config is read we log with defaults.
    configure_logging()
    path = resolve_config_path(args.config)
    try:
        cfg = load_config(path)
    except ConfigurationError as exc:
        log.error("provisioner.config_failed", path=str(path), error=str(exc))
        return 1

    try:
        configure_logging(cfg.log.level, cfg.log.format, cfg.log.file)
    except OSError as exc:
        log.error("provisioner.log_file_failed", file=cfg.log.file, error=str(exc))
        return 1

    try:
        log.info("provisioner.started", version=__version__)
        try:
            asyncio.run(run_provisioning(cfg))
        except ProvisioningError as exc:
            log.error("provisioner.failed", stage=exc.stage.value, error=str(exc.cause))
            return 1
        log.info("provisioner.finished")
        return 0
    finally:
        close_log_file()


if __name__ == "__main__":
    sys.exit(main())
