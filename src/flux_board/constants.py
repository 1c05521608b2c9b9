"""Shared constants for the board runtime."""

from __future__ import annotations

STATE_DIR_NAME = ".flux"
CONFIG_FILE = "config.yaml"
DEFAULT_STORE_FILE = "flux.json"
LOCK_SUFFIX = ".lock"

ENV_DATA_PATH = "FLUX_DATA"
ENV_LOG_LEVEL = "FLUX_LOG_LEVEL"

WINDOWS_LOCK_BYTES = 1024

# Live stream
DEFAULT_COALESCE_MS = 75
DEFAULT_HEARTBEAT_SECONDS = 20.0
DEFAULT_QUEUE_SIZE = 256
DEFAULT_WATCH_SECONDS = 1.0

# Webhook delivery
WEBHOOK_USER_AGENT = "Flux-Webhook/1.0"
DEFAULT_RETRY_DELAYS = (1.0, 5.0, 30.0)
MAX_RETRIES = 3
# Seconds a pending record may sit untouched, beyond its longest retry gap,
# before a starting worker fails it as interrupted.
DELIVERY_LEASE_GRACE = 30.0
DEFAULT_DELIVERY_TIMEOUT = 10.0
DEFAULT_HISTORY_LIMIT = 100
RESPONSE_BODY_LIMIT = 2000

WILDCARD_EVENT = "*"
TEST_EVENT = "webhook.test"

EVENT_NAMES = (
    "project.created",
    "project.updated",
    "project.deleted",
    "epic.created",
    "epic.updated",
    "epic.deleted",
    "task.created",
    "task.updated",
    "task.deleted",
    "task.status_changed",
    "task.archived",
)
