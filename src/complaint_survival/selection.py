"""Configuration and family selection, and the final refit."""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
import pandas as pd
from sklearn.pipeline import Pipeline

from complaint_survival.metrics import METRIC_DIRECTIONS, censoring_weights, evaluate_predictions
from complaint_survival.predict import predict_pipeline, predictions_frame
from complaint_survival.timing import log_execution_time
from complaint_survival.tuning import ModelFamily, config_id, fit_candidate

logger = logging.getLogger("complaint_survival.selection")


def _direction(metric: str) -> bool:
    if metric not in METRIC_DIRECTIONS:
        raise ValueError(f"Unknown metric '{metric}'. Choose from {list(METRIC_DIRECTIONS)}")
    return METRIC_DIRECTIONS[metric] == "minimize"


def show_best(
    results: pd.DataFrame,
    metric: str = "brier_survival_integrated",
    n: int = 5,
    family: Optional[str] = None,
) -> pd.DataFrame:
    """Rank configurations by a validation metric.

    Time-dependent metrics are averaged over the evaluation times (NaN
    values skipped). Ties are broken by config_id, then family.

    Args:
        results: Long metric frame from tuning
        metric: Metric name
        n: Number of rows to return
        family: Restrict to one family

    Returns:
        DataFrame with columns rank, family, config_id, mean, n_times

    Raises:
        ValueError: If the metric is unknown or has no results

    Example:
        >>> show_best(results, n=3, family="coxnet")
           rank  family                 config_id      mean  n_times
        0     1  coxnet  {"model__penalty": 0.01}  0.081234        1
    """
    ascending = _direction(metric)
    sub = results[results["metric"] == metric]
    if family is not None:
        sub = sub[sub["family"] == family]
    if sub.empty:
        raise ValueError(f"No results for metric '{metric}'" + (f" and family '{family}'" if family else ""))

    summary = (
        sub.groupby(["family", "config_id"], as_index=False)
        .agg(mean=("value", "mean"), n_times=("value", "size"))
        .sort_values(
            ["mean", "config_id", "family"],
            ascending=[ascending, True, True],
            na_position="last",
            kind="mergesort",
        )
        .reset_index(drop=True)
    )
    summary.insert(0, "rank", np.arange(1, len(summary) + 1))
    return summary.head(n)


def select_best(
    results: pd.DataFrame,
    metric: str = "brier_survival_integrated",
    family: Optional[str] = None,
) -> dict:
    """Return the parameters of the best configuration.

    Example:
        >>> select_best(results, family="coxnet")
        {'model__penalty': 0.0077}
    """
    best = show_best(results, metric=metric, n=1, family=family).iloc[0]
    return json.loads(best["config_id"])


def select_family(
    results: pd.DataFrame,
    metric: str = "brier_survival_integrated",
) -> Tuple[pd.DataFrame, str]:
    """Pick the best configuration per family and the winning family.

    Returns:
        Tuple containing:
        - best: One row per family (family, config_id, mean), ranked
        - winner: Name of the family with the best metric (ties by name)
    """
    ascending = _direction(metric)
    rows = [
        show_best(results, metric=metric, n=1, family=f).iloc[0]
        for f in sorted(results["family"].unique())
    ]
    best = (
        pd.DataFrame(rows)
        .drop(columns="rank")
        .sort_values(["mean", "family"], ascending=[ascending, True], na_position="last", kind="mergesort")
        .reset_index(drop=True)
    )
    best.insert(0, "rank", np.arange(1, len(best) + 1))
    winner = str(best.loc[0, "family"])
    logger.info(f"Selected family: {winner} ({metric}={best.loc[0, 'mean']:.4f})")
    return best, winner


@dataclass
class LastFitResult:
    """Outcome of refitting the selected configuration.

    Attributes:
        family: Family name
        params: Selected parameters
        pipeline: Pipeline fitted on training + validation data
        metrics: Long metric frame on the test subset
        predictions: Long prediction frame on the test subset
        survival: Test survival probabilities, shape (n_test, n_times)
        eval_times: Evaluation times
    """
    family: str
    params: dict
    pipeline: Pipeline
    metrics: pd.DataFrame
    predictions: pd.DataFrame
    survival: np.ndarray
    eval_times: np.ndarray

    def metric(self, name: str = "brier_survival_integrated") -> float:
        """Scalar test metric by name."""
        row = self.metrics[(self.metrics["metric"] == name) & self.metrics["eval_time"].isna()]
        return float(row["value"].iloc[0])


@log_execution_time()
def last_fit(
    family: ModelFamily,
    params: dict,
    X_fit: pd.DataFrame,
    y_fit: np.ndarray,
    X_test: pd.DataFrame,
    y_test: np.ndarray,
    eval_times,
    row_ids=None,
) -> LastFitResult:
    """Refit the selected configuration and score it once on the test subset.

    Args:
        family: Winning family
        params: Winning parameters
        X_fit, y_fit: Training + validation records
        X_test, y_test: Test records
        eval_times: Evaluation horizons
        row_ids: Identifiers for the prediction frame (test positions if None)

    Returns:
        LastFitResult

    Example:
        >>> res = last_fit(fams["coxnet"], {"model__penalty": 0.01}, X_fit, y_fit, X_te, y_te, times)
        >>> res.metric("concordance_survival")
        0.71
    """
    times = np.asarray(eval_times, dtype=float)
    pipe = fit_candidate(family, params, X_fit, y_fit)
    surv, pred_time = predict_pipeline(pipe, X_test, times)

    metrics = evaluate_predictions(y_fit, y_test, surv, pred_time, times)
    metrics.insert(0, "config_id", config_id(params))
    metrics.insert(0, "family", family.name)

    weights = censoring_weights(y_fit, y_test, times)
    predictions = predictions_frame(surv, pred_time, times, weights=weights, row_ids=row_ids)
    predictions["time"] = np.repeat(y_test["time"].astype(float), len(times))
    predictions["event"] = np.repeat(y_test["event"].astype(bool), len(times))

    return LastFitResult(
        family=family.name,
        params=params,
        pipeline=pipe,
        metrics=metrics,
        predictions=predictions,
        survival=surv,
        eval_times=times,
    )
