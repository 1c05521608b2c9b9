"""Load optional board configuration from `.flux/config.yaml`."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_COALESCE_MS,
    DEFAULT_DELIVERY_TIMEOUT,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_RETRY_DELAYS,
    DEFAULT_STORE_FILE,
    DEFAULT_WATCH_SECONDS,
    ENV_DATA_PATH,
    ENV_LOG_LEVEL,
    MAX_RETRIES,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


def load_board_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional board config file.

    Args:
        project_dir: Directory holding the `.flux/` state directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_float(raw: Any, default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _retry_delays(raw: Any) -> tuple[float, ...]:
    if not isinstance(raw, list) or len(raw) > MAX_RETRIES:
        return DEFAULT_RETRY_DELAYS
    delays: list[float] = []
    for item in raw:
        try:
            value = float(item)
        except (TypeError, ValueError):
            return DEFAULT_RETRY_DELAYS
        if value < 0:
            return DEFAULT_RETRY_DELAYS
        delays.append(value)
    return tuple(delays)


@dataclass
class BoardSettings:
    """Resolved runtime settings for a board instance."""

    state_dir: Path
    storage_path: Path
    coalesce_ms: int = DEFAULT_COALESCE_MS
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    queue_size: int = DEFAULT_QUEUE_SIZE
    watch_seconds: float = DEFAULT_WATCH_SECONDS
    delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT
    retry_delays: tuple[float, ...] = field(default=DEFAULT_RETRY_DELAYS)
    history_limit: int = DEFAULT_HISTORY_LIMIT
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, project_dir: Path, config: dict[str, Any]) -> "BoardSettings":
        """Build settings from a config mapping, applying env overrides.

        Invalid values fall back to their defaults.
        """
        state_dir = project_dir.resolve() / STATE_DIR_NAME

        raw_path = os.getenv(ENV_DATA_PATH) or _get_nested(config, "storage", "path") or DEFAULT_STORE_FILE
        storage_path = Path(str(raw_path)).expanduser()
        if not storage_path.is_absolute():
            storage_path = state_dir / storage_path

        level = os.getenv(ENV_LOG_LEVEL) or config.get("log_level") or "INFO"

        return cls(
            state_dir=state_dir,
            storage_path=storage_path,
            coalesce_ms=_positive_int(_get_nested(config, "live", "coalesce_ms"), DEFAULT_COALESCE_MS),
            heartbeat_seconds=_positive_float(
                _get_nested(config, "live", "heartbeat_seconds"), DEFAULT_HEARTBEAT_SECONDS
            ),
            queue_size=_positive_int(_get_nested(config, "live", "queue_size"), DEFAULT_QUEUE_SIZE),
            watch_seconds=_positive_float(_get_nested(config, "live", "watch_seconds"), DEFAULT_WATCH_SECONDS),
            delivery_timeout=_positive_float(
                _get_nested(config, "webhooks", "timeout_seconds"), DEFAULT_DELIVERY_TIMEOUT
            ),
            retry_delays=_retry_delays(_get_nested(config, "webhooks", "retry_delays")),
            history_limit=_positive_int(_get_nested(config, "webhooks", "history_limit"), DEFAULT_HISTORY_LIMIT),
            log_level=str(level).upper(),
        )


def load_settings(project_dir: Path) -> BoardSettings:
    """Load config for *project_dir* and resolve it into :class:`BoardSettings`."""
    config, err = load_board_config(project_dir)
    if err:
        logger.warning("Ignoring unreadable board config: {}", err)
    return BoardSettings.from_config(project_dir, config)
