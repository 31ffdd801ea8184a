"""MLflow experiment tracking with graceful degradation.

Tracking is optional: every ``safe_*`` helper logs a warning and returns
False instead of raising when MLflow is unavailable, so a tracking failure
never aborts an analysis run.
"""
from __future__ import annotations
import os
import json
import logging
import tempfile
import contextlib
from typing import Dict, Any, Optional
import mlflow
import mlflow.exceptions


EXPERIMENT_NAME = "complaint_survival"


def start_run(
    run_name: str,
    tags: Dict[str, str] | None = None,
    tracking_uri: str | None = None,
    artifact_location: str | None = None,
    logger: Optional[logging.Logger] = None,
):
    """Start an MLflow run under the complaint_survival experiment.

    A backend that refuses to start (unreachable server, unsupported store)
    is logged and replaced by an empty context, so the analysis runs
    untracked.

    Args:
        run_name: Name identifier for this run
        tags: Optional key-value tags attached to the run
        tracking_uri: Optional tracking URI (e.g. ``sqlite:///.../mlflow.db``)
        artifact_location: Artifact root used when the experiment is created
        logger: Optional logger for warnings

    Returns:
        Active MLflow run context manager, or ``contextlib.nullcontext()``

    Example:
        >>> with start_run("sample_analysis", tracking_uri="sqlite:///mlruns/mlflow.db"):
        ...     safe_log_params({"seed": 403})
    """
    try:
        if tracking_uri is not None:
            mlflow.set_tracking_uri(tracking_uri)
        if mlflow.get_experiment_by_name(EXPERIMENT_NAME) is None:
            mlflow.create_experiment(EXPERIMENT_NAME, artifact_location=artifact_location)
        mlflow.set_experiment(EXPERIMENT_NAME)
        return mlflow.start_run(run_name=run_name, tags=tags)
    except (mlflow.exceptions.MlflowException, OSError) as e:
        (logger or logging.getLogger("complaint_survival.tracking")).warning(
            f"MLflow tracking unavailable, continuing without it: {e}"
        )
        return contextlib.nullcontext()


def _no_active_run(what: str, logger: Optional[logging.Logger]) -> bool:
    if mlflow.active_run() is not None:
        return False
    if logger:
        logger.debug(f"No active MLflow run, {what} not logged")
    return True


def _flatten(prefix: str, value: Any, out: Dict[str, Any]) -> None:
    if isinstance(value, dict):
        for k, v in value.items():
            _flatten(f"{prefix}.{k}" if prefix else str(k), v, out)
    else:
        out[prefix] = value


def flatten_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten nested dictionaries into dotted MLflow parameter names.

    Example:
        >>> flatten_params({"split": {"seed": 403}})
        {'split.seed': 403}
    """
    out: Dict[str, Any] = {}
    _flatten("", params, out)
    return out


def safe_log_params(params: Dict[str, Any], logger: Optional[logging.Logger] = None) -> bool:
    """Log parameters to the active MLflow run.

    Non-serializable values are logged as strings.

    Returns:
        True if logging succeeded, False if it failed
    """
    if _no_active_run("params", logger):
        return False
    try:
        for k, v in flatten_params(params).items():
            mlflow.log_param(k, v if isinstance(v, (int, float, str, bool)) else str(v))
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow params logging failed: {e}")
        return False


def safe_log_metrics(
    metrics: Dict[str, float],
    step: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Log metrics to the active MLflow run.

    NaN values are skipped.

    Args:
        metrics: Dictionary of metric names and values
        step: Optional step number (e.g. candidate index)
        logger: Optional logger for warnings

    Returns:
        True if logging succeeded, False if it failed

    Example:
        >>> safe_log_metrics({"coxnet.brier_survival_integrated": 0.081}, step=3)
        True
    """
    if _no_active_run("metrics", logger):
        return False
    clean = {k: float(v) for k, v in metrics.items() if v == v}
    try:
        mlflow.log_metrics(clean, step=step)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow metrics logging failed: {e}")
        return False


def safe_log_artifact(path: str, logger: Optional[logging.Logger] = None) -> bool:
    """Log a file to the active MLflow run.

    Returns:
        True if logging succeeded, False if the file is missing or MLflow failed
    """
    if not os.path.exists(path):
        if logger:
            logger.warning(f"Artifact not found, skipping: {path}")
        return False
    if _no_active_run("artifact", logger):
        return False

    try:
        mlflow.log_artifact(path)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow artifact logging failed for {path}: {e}")
        return False


def safe_log_dict(name: str, d: Dict[str, Any], logger: Optional[logging.Logger] = None) -> bool:
    """Log a dictionary as a JSON artifact of the active MLflow run.

    Args:
        name: Base name for the JSON file (without extension)
        d: JSON-serializable dictionary

    Returns:
        True if logging succeeded, False if it failed
    """
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, f"{name}.json")
        with open(path, "w") as f:
            json.dump(d, f, indent=2, default=str)
        return safe_log_artifact(path, logger=logger)
