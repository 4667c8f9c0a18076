# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry helper with exponential backoff.

Used where the kernel is known to lag behind user space: partition nodes
appearing after `losetup --partscan`, and mount points that stay busy for
a moment after rsync exits.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 60.0,
    jitter_s: float = 1.0,
    exceptions: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
    operation_name: str = "operation",
    logger: Optional[Any] = None,
    log_level: int = logging.WARNING,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Retry an operation with exponential backoff.

    Args:
        operation: Callable that returns T
        max_attempts: Maximum number of attempts
        base_backoff_s: Base backoff time in seconds
        max_backoff_s: Maximum backoff time in seconds
        jitter_s: Random jitter added to each backoff
        exceptions: Exception type(s) that trigger a retry
        operation_name: Name for logging
        logger: Logger for retry messages (optional)
        log_level: Log level for retry messages
        on_retry: Called with (attempt, error) before sleeping; lets the
            caller nudge the system (e.g. re-read a partition table)

    Returns:
        Result of the operation. The last exception is re-raised when every
        attempt fails.

    Example:
        part = retry_operation(
            lambda: self._find_partition(2),
            max_attempts=2,
            exceptions=ResourceError,
            on_retry=lambda *_: self._reread_partitions(),
        )
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            if attempt >= max_attempts:
                if logger:
                    logger.log(logging.ERROR, "%s failed after %d attempts: %s", operation_name, max_attempts, e)
                raise

            sleep_time = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
            if jitter_s > 0:
                sleep_time += random.uniform(0, jitter_s)

            if logger:
                logger.log(
                    log_level,
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    operation_name,
                    attempt,
                    max_attempts,
                    e,
                    sleep_time,
                )
            if on_retry is not None:
                on_retry(attempt, e)
            time.sleep(sleep_time)

    raise RuntimeError(f"{operation_name} failed with no attempts made")
