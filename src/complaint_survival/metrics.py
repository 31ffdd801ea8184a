"""Censoring-aware survival metrics.

All metrics weight observations by the inverse probability of remaining
uncensored, estimated with a Kaplan-Meier fit of the censoring
distribution on the training data.

Metric names follow the long results format used throughout the package:

- ``brier_survival``: Brier score at each evaluation time (lower is better)
- ``brier_survival_integrated``: Brier curve integrated over the horizons
- ``roc_auc_survival``: cumulative/dynamic ROC-AUC at each evaluation time
- ``concordance_survival``: IPCW concordance of the predicted times
"""
from __future__ import annotations
from typing import Tuple
import numpy as np
import pandas as pd
from scipy import integrate
from sksurv.metrics import concordance_index_ipcw
from sksurv.nonparametric import CensoringDistributionEstimator

METRIC_DIRECTIONS = {
    "brier_survival": "minimize",
    "brier_survival_integrated": "minimize",
    "roc_auc_survival": "maximize",
    "concordance_survival": "maximize",
}
DYNAMIC_METRICS = ("brier_survival", "roc_auc_survival")
STATIC_METRICS = ("brier_survival_integrated", "concordance_survival")


def _censoring_probability(estimator: CensoringDistributionEstimator, times, trunc: float) -> np.ndarray:
    """Probability of remaining uncensored, floored away from zero.

    Query times past the last training time carry the last estimate
    forward. Probabilities at or below the floor are raised to it, where the
    floor is ``trunc`` or half the smallest positive probability of the
    fitted curve, whichever is smaller.
    """
    times = np.asarray(times, dtype=float)
    last = float(estimator.unique_time_[-1])
    probs = estimator.predict_proba(np.minimum(times, last))

    positive = estimator.prob_[estimator.prob_ > 0]
    floor = trunc
    if positive.size and positive.min() < trunc:
        floor = positive.min() / 2.0
    return np.where(probs <= floor, floor, probs)


def censoring_weights(y_train, y_eval, times, trunc: float = 0.01) -> np.ndarray:
    """Inverse probability of censoring weights for each observation and horizon.

    For evaluation time ``t`` and observation ``i``:
    - resolved by ``t`` (time_i <= t, event): ``1 / G(time_i)``
    - still open after ``t`` (time_i > t): ``1 / G(t)``
    - censored at or before ``t``: ``0`` (its status at ``t`` is unknown)

    ``G`` is the Kaplan-Meier estimate of the censoring survival function
    fitted on ``y_train``.

    Args:
        y_train: Structured array used to estimate the censoring distribution
        y_eval: Structured array of the observations being scored
        times: Evaluation times, shape (n_times,)
        trunc: Lower bound for censoring probabilities

    Returns:
        Array with shape (n_eval, n_times)

    Example:
        >>> w = censoring_weights(y_train, y_test, [0, 30, 60])
        >>> w.shape
        (200, 3)
    """
    times = np.asarray(times, dtype=float)
    cens = CensoringDistributionEstimator().fit(y_train)
    g_times = _censoring_probability(cens, times, trunc)
    g_obs = _censoring_probability(cens, y_eval["time"], trunc)

    time = y_eval["time"].astype(float)[:, None]
    event = y_eval["event"].astype(bool)[:, None]
    is_case = (time <= times[None, :]) & event
    is_control = time > times[None, :]

    weights = np.zeros((len(y_eval), len(times)), dtype=float)
    weights = np.where(is_case, 1.0 / g_obs[:, None], weights)
    weights = np.where(is_control, 1.0 / g_times[None, :], weights)
    return weights


def compute_brier(y_train, y_eval, surv_pred: np.ndarray, times, weights: np.ndarray | None = None) -> np.ndarray:
    """Calculate the censoring-weighted Brier score at each evaluation time.

    Squared distance between the predicted survival probability and the
    observed status (1 = still open at ``t``), averaged over all
    observations with the weights of :func:`censoring_weights`.

    Args:
        y_train: Structured array from the fitting data (censoring distribution)
        y_eval: Structured array of the scored observations
        surv_pred: Predicted survival probabilities, shape (n_eval, n_times)
        times: Evaluation times, shape (n_times,)
        weights: Precomputed censoring weights (computed if None)

    Returns:
        Brier score per evaluation time, shape (n_times,)
    """
    times = np.asarray(times, dtype=float)
    if weights is None:
        weights = censoring_weights(y_train, y_eval, times)
    outcome = (y_eval["time"].astype(float)[:, None] > times[None, :]).astype(float)
    return np.mean(weights * np.square(outcome - surv_pred), axis=0)


def integrate_brier(times, brier: np.ndarray) -> float:
    """Integrate a Brier curve over time and divide by the time span.

    Raises:
        ValueError: If fewer than two time points are given
    """
    times = np.asarray(times, dtype=float)
    if times.size < 2:
        raise ValueError("At least two evaluation times are required to integrate the Brier score")
    return float(integrate.trapezoid(brier, times) / (times[-1] - times[0]))


def compute_ibs(times, y_train, y_eval, surv_pred: np.ndarray) -> float:
    """Calculate the integrated Brier score.

    Args:
        times: Evaluation times, shape (n_times,), at least two
        y_train: Structured array from the fitting data
        y_eval: Structured array of the scored observations
        surv_pred: Predicted survival probabilities, shape (n_eval, n_times)

    Returns:
        Integrated Brier score (lower is better, 0.25 for an uninformative
        prediction of 0.5 everywhere)

    Example:
        >>> ibs = compute_ibs(np.arange(0, 301, 30), y_train, y_val, surv)
        >>> print(f"IBS: {ibs:.4f}")
        IBS: 0.0912
    """
    return integrate_brier(times, compute_brier(y_train, y_eval, surv_pred, times))


def compute_time_dependent_auc(
    y_train,
    y_eval,
    times,
    risk_scores: np.ndarray,
    weights: np.ndarray | None = None,
) -> Tuple[np.ndarray, float]:
    """Calculate the cumulative/dynamic ROC-AUC at each evaluation time.

    At time ``t`` the cases are observations resolved by ``t`` (weighted by
    ``1 / G(time_i)``) and the controls are observations still open after
    ``t``. The AUC is the weighted share of case/control pairs in which the
    case has the higher risk score, counting ties as one half.

    Args:
        y_train: Structured array from the fitting data
        y_eval: Structured array of the scored observations
        times: Evaluation times, shape (n_times,)
        risk_scores: Shape (n_eval,) or (n_eval, n_times); higher = earlier
            resolution. ``1 - surv_pred`` is a time-dependent choice.
        weights: Precomputed censoring weights (computed if None)

    Returns:
        Tuple containing:
        - aucs: AUC per time, NaN where a time has no cases or no controls
        - mean_auc: Mean over the defined AUC values (NaN if none)
    """
    times = np.asarray(times, dtype=float)
    risk = np.asarray(risk_scores, dtype=float)
    if risk.ndim == 1:
        risk = np.repeat(risk[:, None], len(times), axis=1)
    if weights is None:
        weights = censoring_weights(y_train, y_eval, times)

    time = y_eval["time"].astype(float)
    event = y_eval["event"].astype(bool)
    aucs = np.full(len(times), np.nan)

    for j, t in enumerate(times):
        cases = (time <= t) & event
        controls = time > t
        if not cases.any() or not controls.any():
            continue

        control_scores = np.sort(risk[controls, j])
        case_scores = risk[cases, j]
        case_weights = weights[cases, j]

        below = np.searchsorted(control_scores, case_scores, side="left")
        ties = np.searchsorted(control_scores, case_scores, side="right") - below
        wins = below + 0.5 * ties
        aucs[j] = np.sum(case_weights * wins) / (np.sum(case_weights) * controls.sum())

    defined = aucs[~np.isnan(aucs)]
    mean_auc = float(defined.mean()) if defined.size else np.nan
    return aucs, mean_auc


def compute_cindex(y_train, y_eval, predicted_times, tau: float | None = None) -> float:
    """Calculate Uno's IPCW concordance index of predicted resolution times.

    Pairs are ordered by predicted time: a longer prediction should go with
    a later resolution. Observations at or beyond ``tau`` are not used as
    the earlier member of a pair.

    Args:
        y_train: Structured array used to estimate the censoring distribution
        y_eval: Structured array of the scored observations
        predicted_times: Predicted durations, shape (n_eval,)
        tau: Truncation time. Capped at the largest training time

    Returns:
        Concordance index between 0 and 1 (0.5 = random ordering)

    Example:
        >>> compute_cindex(y_train, y_test, model.predict_time(X_test), tau=300)
        0.712
    """
    train_max = float(np.max(y_train["time"]))
    if tau is None or tau <= 0:
        tau = train_max
    tau = min(float(tau), train_max)

    risk = -np.asarray(predicted_times, dtype=float)
    result = concordance_index_ipcw(y_train, y_eval, risk, tau=tau)
    return float(result[0])


def evaluate_predictions(
    y_train,
    y_eval,
    surv_pred: np.ndarray,
    predicted_times: np.ndarray,
    times,
) -> pd.DataFrame:
    """Compute every metric for one set of predictions.

    Args:
        y_train: Structured array used to estimate the censoring distribution
        y_eval: Structured array of the scored observations
        surv_pred: Predicted survival probabilities, shape (n_eval, n_times)
        predicted_times: Predicted durations, shape (n_eval,)
        times: Evaluation times, shape (n_times,)

    Returns:
        Long DataFrame with columns ``metric``, ``eval_time`` (NaN for
        scalar metrics) and ``value``

    Example:
        >>> m = evaluate_predictions(y_train, y_val, surv, pred_time, times)
        >>> m.query("metric == 'brier_survival_integrated'")["value"].item()
        0.0874
    """
    times = np.asarray(times, dtype=float)
    weights = censoring_weights(y_train, y_eval, times)

    brier = compute_brier(y_train, y_eval, surv_pred, times, weights=weights)
    aucs, _ = compute_time_dependent_auc(y_train, y_eval, times, 1.0 - surv_pred, weights=weights)
    ibs = integrate_brier(times, brier)
    cindex = compute_cindex(y_train, y_eval, predicted_times, tau=float(times.max()))

    rows = [
        {"metric": "brier_survival", "eval_time": float(t), "value": float(b)}
        for t, b in zip(times, brier)
    ]
    rows += [
        {"metric": "roc_auc_survival", "eval_time": float(t), "value": float(a)}
        for t, a in zip(times, aucs)
    ]
    rows.append({"metric": "brier_survival_integrated", "eval_time": np.nan, "value": ibs})
    rows.append({"metric": "concordance_survival", "eval_time": np.nan, "value": cindex})
    return pd.DataFrame(rows, columns=["metric", "eval_time", "value"])
