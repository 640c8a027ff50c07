"""Webhook delivery for composed notification cards.

Posts a NotificationDocument to interactive-card webhooks with a 30 s
timeout and a shared RetryPolicy. A response is a failure when the
transport fails, the HTTP status is not 2xx, or the JSON body carries a
non-zero ``code``. Rate-limit messages are classified separately so the
caller can cool down before the next destination.

Stdlib-only (urllib), like the metrics client.
"""

from __future__ import annotations

import datetime
import http.client
import json
import logging
import threading
import time
import urllib.error
import urllib.request
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from metric_push.config import Destination, TaskDefinition
from metric_push.document import NotificationDocument
from metric_push.errors import DeliveryRateLimited, DeliveryTransportError
from metric_push.locks import ConcurrencyController
from metric_push.retry import RetryPolicy, linear_backoff

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERNS = ("frequency limited", "too many request")
DEFAULT_HISTORY_SIZE = 1000


def is_rate_limited(message: str) -> bool:
    """True if a backend message indicates request throttling."""
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in RATE_LIMIT_PATTERNS)


def _is_delivery_failure(exc: Exception) -> bool:
    return isinstance(exc, DeliveryTransportError)


def default_delivery_policy(max_attempts: int = 3, backoff_s: float = 2.0) -> RetryPolicy:
    """Three attempts, waiting ``attempt * 2s`` between them."""
    return RetryPolicy(
        name="webhook delivery",
        max_attempts=max_attempts,
        backoff=linear_backoff(backoff_s),
        retryable=_is_delivery_failure,
    )


# ---------------------------------------------------------------------------
# Send history
# ---------------------------------------------------------------------------


@dataclass
class SendRecord:
    """Outcome of one delivery to one destination."""

    timestamp: datetime.datetime
    status: str  # success | failed
    message: str
    destination: str
    task_name: str
    button_text: str = ""
    button_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat(timespec="seconds")
        return data


class SendHistory(Protocol):
    def append(self, record: SendRecord) -> None: ...


class MemorySendHistory:
    """Thread-safe bounded history; the oldest records are evicted first."""

    def __init__(self, max_records: int = DEFAULT_HISTORY_SIZE) -> None:
        self._records: deque[SendRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def append(self, record: SendRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, limit: int | None = None) -> list[SendRecord]:
        """Return records newest first, at most *limit* of them."""
        with self._lock:
            records = list(reversed(self._records))
        return records if limit is None else records[:limit]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class WebhookClient:
    """Client that posts interactive cards to webhook URLs.

    Args:
        timeout_s: Per-request timeout.
        retry: Retry policy applied to each delivery.
    """

    timeout_s: float = 30
    retry: RetryPolicy = field(default_factory=default_delivery_policy)

    def _post(self, url: str, payload: bytes) -> dict[str, Any]:
        """POST one payload and classify the response.

        Raises:
            DeliveryRateLimited: When the backend reports throttling.
            DeliveryTransportError: On any other failure.
        """
        req = urllib.request.Request(
            url,
            data=payload,
            headers={"Content-Type": "application/json; charset=utf-8"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            error_cls = (
                DeliveryRateLimited
                if exc.code == 429 or is_rate_limited(body)
                else DeliveryTransportError
            )
            raise error_cls(
                f"webhook returned HTTP {exc.code}: {body}", status_code=exc.code
            ) from exc
        except urllib.error.URLError as exc:
            raise DeliveryTransportError(f"Connection failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise DeliveryTransportError(f"Timed out after {self.timeout_s}s") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise DeliveryTransportError(f"Read failed: {exc!r}") from exc

        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.debug("Non-JSON webhook response: %s", raw[:200])
            return {}
        if not isinstance(data, dict):
            return {}

        code = data.get("code", data.get("StatusCode", 0))
        if code not in (0, None):
            message = str(data.get("msg") or data.get("StatusMessage") or "")
            error_cls = DeliveryRateLimited if is_rate_limited(message) else DeliveryTransportError
            raise error_cls(
                f"webhook error code={code}, msg={message}", error_code=code
            )
        return data

    def deliver(self, destination: Destination, document: NotificationDocument) -> None:
        """Post *document* to *destination*, retrying per the policy.

        Raises:
            DeliveryTransportError: After the final failed attempt.
        """
        payload = document.to_json().encode("utf-8")
        logger.debug(
            "Posting %d bytes to destination %s", len(payload), destination.id
        )
        self.retry.execute(self._post, destination.url, payload)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


def deliver_to_all(
    client: WebhookClient,
    task: TaskDefinition,
    document: NotificationDocument,
    *,
    history: SendHistory,
    controller: ConcurrencyController | None = None,
    destinations: Iterable[Destination] | None = None,
    rate_limit_cooldown_s: float = 3,
    sleep_fn: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime.datetime] = datetime.datetime.now,
) -> list[SendRecord]:
    """Deliver one document to every destination of *task*, in order.

    Destinations whose URL already received the document in this call are
    skipped and not recorded. Each send holds the lock for its URL.
    A rate-limited failure is followed by a fixed cooldown before the next
    destination.

    Returns:
        The records appended to *history*, one per attempted destination.
    """
    records = []
    delivered_urls: set[str] = set()
    targets = list(task.destinations if destinations is None else destinations)

    for index, destination in enumerate(targets):
        if destination.url in delivered_urls:
            logger.info(
                "Skipping destination %s: URL already delivered for task %s",
                destination.id,
                task.id,
            )
            continue

        error: DeliveryTransportError | None = None
        if controller is not None:
            with controller.destination_lock(destination.url):
                error = _attempt(client, destination, document)
        else:
            error = _attempt(client, destination, document)

        if error is None:
            delivered_urls.add(destination.url)
            status, message = "success", f"sent card: {document.title}"
            logger.info("Delivered task %s to destination %s", task.id, destination.id)
        else:
            status, message = "failed", str(error)
            logger.error(
                "Delivery of task %s to destination %s failed: %s",
                task.id,
                destination.id,
                error,
            )

        record = SendRecord(
            timestamp=clock(),
            status=status,
            message=message,
            destination=destination.url,
            task_name=task.display_name,
            button_text=task.card.button_text,
            button_url=task.card.button_url,
        )
        history.append(record)
        records.append(record)

        is_last = index == len(targets) - 1
        if isinstance(error, DeliveryRateLimited) and not is_last:
            logger.warning("Rate limited, cooling down %.1fs", rate_limit_cooldown_s)
            sleep_fn(rate_limit_cooldown_s)

    return records


def _attempt(
    client: WebhookClient, destination: Destination, document: NotificationDocument
) -> DeliveryTransportError | None:
    try:
        client.deliver(destination, document)
    except DeliveryTransportError as exc:
        return exc
    return None
