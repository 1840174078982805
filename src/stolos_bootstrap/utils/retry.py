# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import functools
import logging
import time
from typing import Callable

log = logging.getLogger("stolos")


class RetryError(RuntimeError):
    pass


def retry(
    *,
    retries: int,
    delay: float,
    backoff: float = 1.0,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
):
    """
    Retry decorator for idempotent network calls.

    retries: number of attempts
    delay: seconds before the second attempt
    backoff: multiplier applied to delay after every failure
    retry_on: exception types to retry, anything else propagates at once
    on_retry: callback(attempt, exception)
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            wait = delay
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
                    else:
                        log.warning("%s attempt %d/%d failed: %s", fn.__name__, attempt, retries, exc)
                    if attempt == retries:
                        break
                    time.sleep(wait)
                    wait *= backoff
            raise RetryError(f"{fn.__name__} failed after {retries} attempts") from last_exc
        return wrapper
    return decorator
