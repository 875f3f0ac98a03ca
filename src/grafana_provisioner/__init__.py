"""Reconcile a Grafana server with data sources, folders and dashboards declared in YAML."""

__version__ = "0.1.0"
