"""Error taxonomy for the push pipeline.

Each stage raises one of these so callers can decide between aborting a
task, skipping a single query, retrying a delivery, or abandoning an
attempt that lost a lock race.
"""

from __future__ import annotations


class MetricPushError(Exception):
    """Base class for all metric_push errors."""


class ConfigurationMissing(MetricPushError):
    """A task, source, or destination could not be resolved.

    The task is aborted and not retried.
    """


class QueryBackendError(MetricPushError):
    """Transport or parse failure talking to the metrics backend."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DeliveryTransportError(MetricPushError):
    """A webhook POST failed (network, HTTP status, or backend error code)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class DeliveryRateLimited(DeliveryTransportError):
    """The webhook backend reported a frequency limit."""


class ConcurrencyConflict(MetricPushError):
    """The task or destination is already locked by another execution."""
