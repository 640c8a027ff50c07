"""metric_push: scheduled metrics cards delivered to chat webhooks."""

__version__ = "0.1.0"

from metric_push.card_composer import QueryResult, compose_document
from metric_push.config import (
    AppConfig,
    CardStyle,
    Destination,
    QueryBinding,
    SendTime,
    TaskDefinition,
    load_config,
)
from metric_push.delivery import MemorySendHistory, SendRecord, WebhookClient
from metric_push.document import DocumentBuilder, NotificationDocument
from metric_push.errors import (
    ConcurrencyConflict,
    ConfigurationMissing,
    DeliveryRateLimited,
    DeliveryTransportError,
    MetricPushError,
    QueryBackendError,
)
from metric_push.executor import TaskExecutor
from metric_push.locks import ConcurrencyController, KeyedLockRegistry
from metric_push.retry import RetryPolicy
from metric_push.scheduler import Scheduler
from metric_push.task_store import YamlTaskStore
from metric_push.unit_converter import convert_unit

__all__ = [
    # card_composer
    "QueryResult",
    "compose_document",
    # config
    "AppConfig",
    "CardStyle",
    "Destination",
    "QueryBinding",
    "SendTime",
    "TaskDefinition",
    "load_config",
    # delivery
    "MemorySendHistory",
    "SendRecord",
    "WebhookClient",
    # document
    "DocumentBuilder",
    "NotificationDocument",
    # errors
    "ConcurrencyConflict",
    "ConfigurationMissing",
    "DeliveryRateLimited",
    "DeliveryTransportError",
    "MetricPushError",
    "QueryBackendError",
    # executor / scheduler
    "TaskExecutor",
    "Scheduler",
    "ConcurrencyController",
    "KeyedLockRegistry",
    "RetryPolicy",
    "YamlTaskStore",
    "convert_unit",
]
