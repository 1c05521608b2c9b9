from __future__ import annotations

import sys

import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def _reset_loguru():
    """CLI tests reconfigure loguru against captured streams; restore a plain sink afterwards."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="INFO")
