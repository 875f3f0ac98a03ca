"""Exception hierarchy shared by the provisioner modules."""
from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for every error raised by grafana-provisioner."""


class ConfigurationError(ProvisionerError):
    """The configuration (or a file it points to) cannot be used as given."""


class GrafanaAPIError(ProvisionerError):
    """Raised for non-2xx Grafana API responses and exhausted transport retries.

    ``status_code`` is 0 when no HTTP response was received at all.
    """

    def __init__(self, status_code: int, message: str, method: str = "", path: str = "") -> None:
        self.status_code = status_code
        self.message = message
        self.method = method
        self.path = path
        where = f" ({method} {path})" if method else ""
        super().__init__(f"Grafana API error {status_code}{where}: {message}")

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class GrafanaResponseError(ProvisionerError):
    """A 2xx response whose body does not have the expected shape."""

    def __init__(self, call: str, detail: str) -> None:
        self.call = call
        super().__init__(f"Unexpected response from {call}: {detail}")
