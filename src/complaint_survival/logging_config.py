"""Centralized logging configuration for the complaint survival analysis.

Provides:
- Console output plus main, performance, warnings and debug log files
- Performance metric logging with timing data
- Categorized capture of library warnings raised while fitting
- Progress tracking over candidate configurations

Example:
    >>> from complaint_survival.logging_config import setup_logging, log_performance
    >>> logger = setup_logging("data/outputs/sample/logs", run_type="sample")
    >>> logger.info("Starting analysis")
    >>> log_performance(logger, "coxnet tuned", duration_sec=12.5, ibs=0.081)
"""
import logging
import sys
import time
import warnings
from pathlib import Path
from datetime import datetime
from typing import Optional
from contextlib import contextmanager


LOGGER_NAME = "complaint_survival"


class PerformanceFilter(logging.Filter):
    """Pass only records tagged with an 'is_performance' attribute."""

    def filter(self, record):
        return getattr(record, "is_performance", False)


class WarningErrorFilter(logging.Filter):
    """Pass only warnings and errors."""

    def filter(self, record):
        return record.levelno >= logging.WARNING


def setup_logging(
    log_dir: str,
    run_type: str = "sample",
    log_level: int = logging.INFO,
    console_output: bool = True,
) -> logging.Logger:
    """Configure the package logger.

    Creates log files in ``log_dir``:
    - main_{timestamp}.log: All log messages
    - performance_{timestamp}.log: Timing and metric records only
    - warnings_{timestamp}.log: Warnings and errors only
    - debug_{timestamp}.log: Debug messages (if log_level=DEBUG)

    Args:
        log_dir: Directory for the log files (created if missing)
        run_type: Type of run, recorded in the first log line
        log_level: Minimum level for the console and debug handlers
        console_output: Whether to echo log records to stdout

    Returns:
        The configured ``complaint_survival`` logger

    Example:
        >>> logger = setup_logging("outputs/logs", log_level=logging.DEBUG)
        >>> logger.warning("Convergence issue detected")
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # filter at handlers

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False

    detailed_formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    performance_formatter = logging.Formatter(
        fmt="%(asctime)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    simple_formatter = logging.Formatter(fmt="%(levelname)-8s | %(message)s")

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(simple_formatter)
        logger.addHandler(console_handler)

    main_handler = logging.FileHandler(log_dir / f"main_{timestamp}.log", mode="w", encoding="utf-8")
    main_handler.setLevel(logging.DEBUG)
    main_handler.setFormatter(detailed_formatter)
    logger.addHandler(main_handler)

    perf_handler = logging.FileHandler(log_dir / f"performance_{timestamp}.log", mode="w", encoding="utf-8")
    perf_handler.setLevel(logging.INFO)
    perf_handler.setFormatter(performance_formatter)
    perf_handler.addFilter(PerformanceFilter())
    logger.addHandler(perf_handler)

    warning_handler = logging.FileHandler(log_dir / f"warnings_{timestamp}.log", mode="w", encoding="utf-8")
    warning_handler.setLevel(logging.WARNING)
    warning_handler.setFormatter(detailed_formatter)
    warning_handler.addFilter(WarningErrorFilter())
    logger.addHandler(warning_handler)

    if log_level == logging.DEBUG:
        debug_handler = logging.FileHandler(log_dir / f"debug_{timestamp}.log", mode="w", encoding="utf-8")
        debug_handler.setLevel(logging.DEBUG)
        debug_handler.setFormatter(detailed_formatter)
        logger.addHandler(debug_handler)

    logger.info(f"Logging initialized for {run_type} run")
    logger.info(f"Log directory: {log_dir.absolute()}")

    return logger


def log_performance(logger: logging.Logger, message: str, **kwargs):
    """Log a timing or metric message to the main and performance logs.

    Args:
        logger: Logger instance
        message: Performance message description
        **kwargs: Values appended as ``key=value`` pairs

    Example:
        >>> log_performance(logger, "forest candidate 3", duration_sec=4.2, ibs=0.07)
        # Output: "forest candidate 3 | duration_sec=4.2 | ibs=0.07"
    """
    if kwargs:
        metrics_str = " | ".join(f"{k}={v}" for k, v in kwargs.items())
        full_message = f"{message} | {metrics_str}"
    else:
        full_message = message

    logger.info(full_message, extra={"is_performance": True})


class WarningLogger:
    """Counts and logs warnings raised while a model family is tuned.

    Keywords follow the messages of the fitting libraries used here:
    lifelines for the Weibull AFT fit, scikit-survival for Coxnet, the
    forest and the censoring estimator, scikit-learn for the encoders and
    the variance filter. Unmatched messages count as ``other``.
    """

    WARNING_CATEGORIES = {
        "convergence": (
            "convergencewarning", "did not converge", "failed to converge",
            "convergence", "maximum number of iterations",
        ),
        "numerical": (
            "overflow", "underflow", "invalid value", "divide by zero",
            "numerical error", "weights are too large", "mean of empty slice",
        ),
        "data": (
            "unknown categories", "found unknown", "no feature in x meets the variance threshold",
            "all-nan", "constant",
        ),
        "statistical": (
            "hessian", "variance_matrix", "statisticalwarning", "approximationwarning",
            "censoring survival function",
        ),
    }

    def __init__(self, logger: logging.Logger, context: Optional[str] = None):
        self.logger = logger
        self.context = context
        self.warning_counts = dict.fromkeys((*self.WARNING_CATEGORIES, "other"), 0)

    def categorize_warning(self, message: str) -> str:
        """Return the first category with a keyword in ``message``."""
        lowered = message.lower()
        for category, keywords in self.WARNING_CATEGORIES.items():
            if any(kw in lowered for kw in keywords):
                return category
        return "other"

    def log_warning(self, message: str, category: Optional[str] = None):
        category = category or self.categorize_warning(message)
        self.warning_counts[category] += 1
        where = f"{self.context}: " if self.context else ""
        self.logger.warning(f"[{category.upper()}] {where}{message}")

    @property
    def total(self) -> int:
        return sum(self.warning_counts.values())

    def summary(self) -> dict:
        """Return ``{category: count}`` for categories that saw warnings."""
        return {k: v for k, v in self.warning_counts.items() if v > 0}



@contextmanager
def capture_warnings(logger: logging.Logger, context: Optional[str] = None):
    """Route Python warnings raised inside the block to ``logger``.

    Args:
        logger: Logger instance
        context: Label prefixed to each warning, e.g. the model family

    Yields:
        WarningLogger instance for accessing warning counts

    Example:
        >>> with capture_warnings(logger, context="coxnet") as warning_logger:
        ...     tune_family(family, X_tr, y_tr, X_va, y_va, times)
        >>> warning_logger.summary()
        {'convergence': 2}
    """
    warning_logger = WarningLogger(logger, context=context)

    def warning_handler(message, category, filename, lineno, file=None, line=None):
        warning_logger.log_warning(f"{category.__name__}: {message}")

    old_showwarning = warnings.showwarning
    warnings.showwarning = warning_handler

    try:
        yield warning_logger
    finally:
        warnings.showwarning = old_showwarning

        summary = warning_logger.summary()
        if summary:
            counts = ", ".join(f"{k}={v}" for k, v in summary.items())
            label = f" ({context})" if context else ""
            logger.info(f"Warning summary{label}: {warning_logger.total} warnings | {counts}")


class ProgressLogger:
    """Logs progress through the candidate configurations of a family.

    When ``track`` names a metric, the best value seen so far (lowest, or
    highest with ``minimize=False``) is reported with each update and by
    :meth:`finish`.

    Example:
        >>> progress = ProgressLogger(logger, total=10, desc="coxnet candidates", track="ibs")
        >>> progress.update(1, metrics={"ibs": 0.081})
        # Output: "coxnet candidates: 1/10 (10.0%) | ibs=0.0810 | best ibs=0.0810 (#1)"
        >>> progress.finish()
        # Output: "coxnet candidates: done in 3.2s | best ibs=0.0810 at candidate 1/10"
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: int,
        desc: str,
        track: Optional[str] = None,
        minimize: bool = True,
        log_interval: int = 1,
    ):
        self.logger = logger
        self.total = total
        self.desc = desc
        self.track = track
        self.minimize = minimize
        self.log_interval = log_interval
        self.current = 0
        self.best: Optional[float] = None
        self.best_step: Optional[int] = None
        self._start = time.perf_counter()

    def _is_better(self, value: float) -> bool:
        if value != value:
            return False
        if self.best is None:
            return True
        return value < self.best if self.minimize else value > self.best

    def update(self, n: int = 1, metrics: Optional[dict] = None):
        """Advance progress by ``n`` candidates and log when due."""
        self.current += n
        if metrics and self.track in metrics and self._is_better(float(metrics[self.track])):
            self.best, self.best_step = float(metrics[self.track]), self.current

        if self.current % self.log_interval == 0 or self.current == self.total:
            pct = (self.current / self.total) * 100 if self.total else 100.0
            msg = f"{self.desc}: {self.current}/{self.total} ({pct:.1f}%)"

            if metrics:
                metrics_str = ", ".join(
                    f"{k}={v:.4f}" if isinstance(v, float) else f"{k}={v}"
                    for k, v in metrics.items()
                )
                msg += f" | {metrics_str}"
            if self.best is not None:
                msg += f" | best {self.track}={self.best:.4f} (#{self.best_step})"

            self.logger.info(msg)

    def finish(self):
        """Log elapsed time and the best tracked value to the performance log."""
        msg = f"{self.desc}: done in {time.perf_counter() - self._start:.1f}s"
        if self.best is not None:
            msg += f" | best {self.track}={self.best:.4f} at candidate {self.best_step}/{self.total}"
        log_performance(self.logger, msg)
