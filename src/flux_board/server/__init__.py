"""HTTP surface for the board: REST, SSE and WebSocket."""

from .api import create_app

__all__ = ["create_app"]
