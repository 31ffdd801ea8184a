"""Timing utilities for performance logging.

Example:
    >>> from complaint_survival.timing import log_execution_time, Timer
    >>>
    >>> @log_execution_time()
    ... def tune(family):
    ...     ...
    ...
    >>> with Timer(logger, "Preprocessing"):
    ...     Xt = pre.fit_transform(X)
"""
import time
import functools
import logging
from typing import Callable, Optional

from complaint_survival.logging_config import LOGGER_NAME, log_performance


def log_execution_time(logger: Optional[logging.Logger] = None):
    """Decorator that logs how long a function takes.

    Logs a performance record on success and an error with traceback on
    failure; the exception is re-raised.

    Args:
        logger: Logger instance (defaults to a child of the package logger
            named after the function's module)

    Example:
        >>> @log_execution_time()
        ... def last_fit(...):
        ...     ...
        INFO     | Completed: last_fit | duration_sec=3.1
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            log = logger or logging.getLogger(
                f"{LOGGER_NAME}.{func.__module__.rsplit('.', 1)[-1]}"
            )
            start_time = time.perf_counter()
            log.info(f"Starting: {func.__name__}")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                log.error(f"{func.__name__} failed after {duration:.2f}s: {e}", exc_info=True)
                raise

            duration = time.perf_counter() - start_time
            log_performance(
                log,
                f"Completed: {func.__name__}",
                duration_sec=round(duration, 2),
                duration_min=round(duration / 60, 2),
            )
            return result

        return wrapper
    return decorator


class Timer:
    """Context manager timing a block of code.

    Args:
        logger: Logger instance
        description: Description of the operation being timed

    Example:
        >>> with Timer(logger, "forest tuning") as timer:
        ...     results = tune_family(...)
        INFO     | Starting: forest tuning
        INFO     | Completed: forest tuning | duration_sec=41.7 | duration_min=0.7
    """

    def __init__(self, logger: logging.Logger, description: str):
        self.logger = logger
        self.description = description
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info(f"Starting: {self.description}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time

        if exc_type is None:
            log_performance(
                self.logger,
                f"Completed: {self.description}",
                duration_sec=round(self.duration, 2),
                duration_min=round(self.duration / 60, 2),
            )
        else:
            self.logger.error(
                f"{self.description} failed after {self.duration:.2f}s: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )

        return False

    def elapsed(self) -> float:
        """Seconds since entering the context (0.0 before entering)."""
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
