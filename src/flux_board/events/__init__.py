"""Domain event fan-out: live viewers and webhook subscribers."""

from .dispatcher import EventDispatcher, build_envelope
from .live import LiveConsumer, LiveHub, format_sse
from .watch import watch_store_file

__all__ = ["EventDispatcher", "LiveConsumer", "LiveHub", "build_envelope", "format_sse", "watch_store_file"]
