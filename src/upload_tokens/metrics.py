"""Prometheus metrics for database operations."""

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Histogram

logger = logging.getLogger(__name__)

DB_OPERATION_SECONDS = Histogram(
    "upload_tokens_db_operation_seconds",
    "Duration of token store database operations",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)


@contextmanager
def timed(operation: str) -> Iterator[None]:
    """Observe the duration of the wrapped block under ``operation``.

    Metric failures are logged and never propagate into the timed block.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        try:
            DB_OPERATION_SECONDS.labels(operation=operation).observe(
                time.perf_counter() - start
            )
        except Exception as e:
            logger.debug("Failed to record timing for %s: %s", operation, e)
