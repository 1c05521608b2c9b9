"""Provide the public `flux_board` package exports."""

from __future__ import annotations

from .container import BoardContainer

__all__ = ["BoardContainer"]
