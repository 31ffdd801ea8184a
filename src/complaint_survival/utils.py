from __future__ import annotations
import os
import datetime as dt
from typing import Iterable, Literal
import numpy as np

# Run type for distinguishing sample vs production runs
RunType = Literal["sample", "production"]


def ensure_dir(path: str):
    """Create directory (and parents) if it doesn't exist.

    Example:
        >>> ensure_dir("data/outputs/sample/report")
    """
    os.makedirs(path, exist_ok=True)


def evaluation_times(eval_times: Iterable[float]) -> np.ndarray:
    """Validate and sort an evaluation horizon grid.

    Args:
        eval_times: Horizons in days

    Returns:
        Sorted, de-duplicated float array

    Raises:
        ValueError: If the grid is empty or holds negative or non-finite values

    Example:
        >>> evaluation_times([30, 0, 60, 30])
        array([ 0., 30., 60.])
    """
    times = np.unique(np.asarray(list(eval_times), dtype=float))
    if times.size == 0:
        raise ValueError("At least one evaluation time is required")
    if not np.isfinite(times).all() or (times < 0).any():
        raise ValueError(f"Evaluation times must be finite and non-negative, got {times}")
    return times


def canonical_params(params: dict) -> dict:
    """Convert numpy scalars in a parameter dict to plain Python values.

    Example:
        >>> canonical_params({"model__penalty": np.float64(0.01)})
        {'model__penalty': 0.01}
    """
    return {k: (v.item() if isinstance(v, np.generic) else v) for k, v in params.items()}


def versioned_name(base: str, run_type: RunType = None) -> str:
    """Generate a timestamped file name.

    Args:
        base: Base filename
        run_type: Optional run type prefix

    Returns:
        Name in format "[runtype_]base_YYYYMMDD_HHMMSS_ffffff"; names sort
        in creation order

    Example:
        >>> versioned_name("final_model", run_type="sample")
        'sample_final_model_20251017_143052_118204'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    if run_type:
        return f"{run_type}_{base}_{ts}"
    return f"{base}_{ts}"


def get_output_paths(run_type: RunType = "sample", base_dir: str = "data/outputs") -> dict:
    """Get standardized output directories for a run type.

    Args:
        run_type: Type of run - "sample" or "production"
        base_dir: Root directory for all outputs

    Returns:
        Dictionary with keys:
        - base_dir: Root output directory for this run type
        - report: Markdown / Word report and figures
        - artifacts: Metric tables and the run configuration
        - models: Saved final model bundles
        - predictions: Prediction CSVs
        - logs: Log files
        - mlruns: MLflow file store

    Example:
        >>> get_output_paths("sample")["report"]
        'data/outputs/sample/report'

    Notes:
        All directories except mlruns are created.
    """
    run_dir = os.path.join(base_dir, run_type)

    paths = {
        "base_dir": run_dir,
        "report": os.path.join(run_dir, "report"),
        "artifacts": os.path.join(run_dir, "artifacts"),
        "models": os.path.join(run_dir, "models"),
        "predictions": os.path.join(run_dir, "predictions"),
        "logs": os.path.join(run_dir, "logs"),
    }
    for path in paths.values():
        ensure_dir(path)

    paths["mlruns"] = os.path.join(run_dir, "mlruns")
    return paths
