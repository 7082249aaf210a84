"""
Exception hierarchy for FleetWatch.

Ingestion failures are split by how the job must react to them:
transient upstream errors are retried, malformed or empty snapshots
abort the run immediately, and store errors are either isolated to a
single vessel or fatal depending on where they happen.
"""

from typing import Optional


class FleetwatchError(Exception):
    """Base exception for all FleetWatch errors."""


class ConfigError(FleetwatchError):
    """Invalid or missing configuration."""


class UpstreamError(FleetwatchError):
    """The upstream vessel feed could not deliver a usable snapshot."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: str = ''):
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout, non-2xx response or unreadable body."""


class MalformedPayloadError(UpstreamError):
    """The feed answered with JSON that violates the expected schema."""


class EmptySnapshotError(UpstreamError):
    """The feed returned zero usable vessels; treated as upstream unhealthy."""


class StoreError(FleetwatchError):
    """A backing store operation failed."""

    def __init__(self, message: str, *, table: str = ''):
        self.table = table
        super().__init__(message)


class IngestionBusyError(FleetwatchError):
    """An ingestion run was requested while another one is still active."""
