"""Prometheus HTTP API client for range and instant queries.

Stdlib-only (urllib). Each call goes through a RetryPolicy that retries
connection failures and 5xx responses; malformed payloads and 4xx
responses fail immediately.
"""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from metric_push.errors import QueryBackendError
from metric_push.retry import RetryPolicy, linear_backoff

logger = logging.getLogger(__name__)


def _is_transient(exc: Exception) -> bool:
    if not isinstance(exc, QueryBackendError):
        return False
    return exc.status_code is None or exc.status_code >= 500


def default_query_policy(max_attempts: int = 2, backoff_s: float = 1.0) -> RetryPolicy:
    """Retry policy used for metrics queries unless one is injected."""
    return RetryPolicy(
        name="metrics query",
        max_attempts=max_attempts,
        backoff=linear_backoff(backoff_s),
        retryable=_is_transient,
    )


@dataclass
class MetricsClient:
    """Client for a Prometheus-compatible query API.

    Args:
        base_url: Backend root, e.g. 'http://prometheus:9090'.
        timeout_s: Per-request timeout.
        retry: Retry policy for transient failures.
    """

    base_url: str
    timeout_s: float = 30
    retry: RetryPolicy = field(default_factory=default_query_policy)

    def _request(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """GET ``<base_url><path>`` and return ``data.result``.

        Raises:
            QueryBackendError: On HTTP errors, connection failures, malformed
                JSON, or a non-success status.
        """
        query = urllib.parse.urlencode(params)
        url = f"{self.base_url.rstrip('/')}{path}?{query}"
        req = urllib.request.Request(url, headers={"Accept": "application/json"})

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise QueryBackendError(
                f"{path} -> HTTP {exc.code}: {body}", status_code=exc.code
            ) from exc
        except urllib.error.URLError as exc:
            raise QueryBackendError(f"{path} -> Connection failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise QueryBackendError(f"{path} -> Timed out after {self.timeout_s}s") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise QueryBackendError(f"{path} -> Read failed: {exc!r}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise QueryBackendError(f"{path} -> Malformed JSON response") from exc

        if not isinstance(data, dict) or data.get("status") != "success":
            error = data.get("error", "unknown error") if isinstance(data, dict) else raw
            raise QueryBackendError(f"{path} -> Query failed: {error}")

        payload = data.get("data")
        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, list):
            raise QueryBackendError(f"{path} -> Response missing data.result")
        return result

    def query_range(
        self, query: str, start: float, end: float, step_s: float
    ) -> list[dict[str, Any]]:
        """Run a range query.

        Args:
            query: PromQL expression.
            start: Window start (unix seconds).
            end: Window end (unix seconds).
            step_s: Resolution step in seconds.

        Returns:
            List of ``{"metric": {...}, "values": [[ts, "val"], ...]}``.
        """
        params = {
            "query": query,
            "start": int(start),
            "end": int(end),
            "step": int(step_s),
        }
        logger.debug("query_range %s start=%s end=%s step=%ss", query, start, end, step_s)
        return self.retry.execute(self._request, "/api/v1/query_range", params)

    def query(self, query: str, at: float | None = None) -> list[dict[str, Any]]:
        """Run an instant query.

        Returns:
            List of ``{"metric": {...}, "value": [ts, "val"]}``.
        """
        params: dict[str, Any] = {"query": query}
        if at is not None:
            params["time"] = int(at)
        logger.debug("query %s at=%s", query, at)
        return self.retry.execute(self._request, "/api/v1/query", params)
