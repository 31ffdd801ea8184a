"""Predictions from fitted pipelines and the saved final model.

This module turns a fitted pipeline into survival curves and point
predictions, reshapes them into the long prediction format, and persists
or reloads the final model bundle for scoring new complaints.
"""
from __future__ import annotations
import os
import glob
import logging
import joblib
import pandas as pd
import numpy as np
from typing import Optional, Tuple

from complaint_survival.config import DataConfig
from complaint_survival.data import load_data, normalize_categoricals
from complaint_survival.preprocessing import transform_features
from complaint_survival.utils import RunType, ensure_dir, evaluation_times, versioned_name

logger = logging.getLogger("complaint_survival.predict")

PREDICTION_COLUMNS = ["row", "pred_time", "eval_time", "pred_survival", "weight_censored"]
MODEL_BASENAME = "final_model"


def predict_pipeline(pipeline, X, times) -> Tuple[np.ndarray, np.ndarray]:
    """Predict survival curves and resolution times with a fitted pipeline.

    Args:
        pipeline: Fitted Pipeline ending in a survival model wrapper
        X: Predictor DataFrame
        times: Evaluation times

    Returns:
        Tuple containing:
        - surv: Survival probabilities, shape (n_samples, n_times)
        - pred_time: Restricted mean survival time per sample
    """
    Xt = transform_features(pipeline, X)
    model = pipeline[-1]
    surv = model.predict_survival_function(Xt, times)
    pred_time = model.predict_time(Xt)
    return surv, pred_time


def predictions_frame(
    surv_pred: np.ndarray,
    predicted_times: np.ndarray,
    times,
    weights: Optional[np.ndarray] = None,
    row_ids=None,
) -> pd.DataFrame:
    """Reshape predictions into one row per (observation, evaluation time).

    Args:
        surv_pred: Survival probabilities, shape (n_samples, n_times)
        predicted_times: Predicted durations, shape (n_samples,)
        times: Evaluation times, shape (n_times,)
        weights: Censoring weights with the shape of ``surv_pred``; NaN when
            None (no observed outcome, e.g. new complaints)
        row_ids: Identifier per observation. Defaults to 0..n-1

    Returns:
        DataFrame with columns ``row``, ``pred_time``, ``eval_time``,
        ``pred_survival``, ``weight_censored``, ordered by row then time

    Example:
        >>> frame = predictions_frame(surv, pred_time, [0, 30, 60])
        >>> frame.groupby("row").size().unique()
        array([3])
    """
    surv_pred = np.asarray(surv_pred, dtype=float)
    times = np.asarray(times, dtype=float)
    n, n_times = surv_pred.shape
    if row_ids is None:
        row_ids = np.arange(n)
    row_ids = np.asarray(row_ids)

    if weights is None:
        weights = np.full(surv_pred.shape, np.nan)

    return pd.DataFrame({
        "row": np.repeat(row_ids, n_times),
        "pred_time": np.repeat(np.asarray(predicted_times, dtype=float), n_times),
        "eval_time": np.tile(times, n),
        "pred_survival": surv_pred.ravel(),
        "weight_censored": np.asarray(weights, dtype=float).ravel(),
    }, columns=PREDICTION_COLUMNS)


def save_final_model(bundle: dict, models_dir: str, run_type: RunType = "sample") -> str:
    """Persist the final model bundle with joblib.

    Args:
        bundle: Dictionary with at least ``pipeline``, ``family``, ``params``
            and ``eval_times``
        models_dir: Output directory
        run_type: Run type prefix for the file name

    Returns:
        Path to the saved file
    """
    ensure_dir(models_dir)
    name = versioned_name(MODEL_BASENAME, run_type=run_type)
    path = os.path.join(models_dir, name + ".joblib")
    # same-timestamp saves get a counter, which still sorts after the first
    counter = 1
    while os.path.exists(path):
        path = os.path.join(models_dir, f"{name}_{counter}.joblib")
        counter += 1
    joblib.dump(bundle, path)
    logger.info(f"Final model saved to: {path}")
    return path


def load_final_model(models_dir: str, model_path: Optional[str] = None) -> dict:
    """Load a saved final model bundle.

    Args:
        models_dir: Directory searched when model_path is None
        model_path: Explicit bundle path

    Returns:
        The bundle dictionary written by :func:`save_final_model`

    Raises:
        FileNotFoundError: If no bundle is found

    Example:
        >>> bundle = load_final_model("data/outputs/sample/models")
        >>> bundle["family"]
        'coxnet'
    """
    if model_path is None:
        pattern = os.path.join(models_dir, f"*{MODEL_BASENAME}_*.joblib")
        model_files = glob.glob(pattern)
        if not model_files:
            raise FileNotFoundError(
                f"No saved final model found in {models_dir}. Run the analysis first."
            )
        # File names end in a sortable timestamp
        model_path = sorted(model_files)[-1]
    elif not os.path.exists(model_path):
        raise FileNotFoundError(f"Model file not found: {model_path}")

    logger.info(f"Loading final model from: {model_path}")
    return joblib.load(model_path)


def generate_predictions(
    file_path: str,
    models_dir: str,
    predictions_dir: str,
    run_type: RunType = "sample",
    eval_times=None,
    model_path: Optional[str] = None,
) -> str:
    """Score new complaint records with the saved final model.

    Only the predictor columns are required; status and elapsed days are
    ignored, so open complaints can be scored directly.

    Args:
        file_path: CSV / Parquet / pickle file of complaint records
        models_dir: Directory holding saved final models
        predictions_dir: Output directory for the predictions CSV
        run_type: Run type used for the output file name
        eval_times: Evaluation times. Defaults to the times stored with the model
        model_path: Explicit model bundle (latest in models_dir if None)

    Returns:
        Path to the saved predictions CSV (long format, see
        :func:`predictions_frame`, plus a ``family`` column)

    Raises:
        ValueError: If predictor columns are missing from the input

    Example:
        >>> path = generate_predictions(
        ...     "data/inputs/open_complaints.csv",
        ...     models_dir="data/outputs/sample/models",
        ...     predictions_dir="data/outputs/sample/predictions",
        ... )
    """
    bundle = load_final_model(models_dir, model_path=model_path)
    data_config = DataConfig(**bundle["data_config"]) if "data_config" in bundle else DataConfig()
    times = evaluation_times(eval_times if eval_times is not None else bundle["eval_times"])

    df = load_data(file_path, run_type=run_type)
    features = list(data_config.numeric_features) + list(data_config.categorical_features)
    missing = [c for c in features if c not in df.columns]
    if missing:
        raise ValueError(f"Input data missing predictor columns: {missing}")

    X = df[features].copy()
    for col in data_config.numeric_features:
        X[col] = pd.to_numeric(X[col], errors="coerce").astype(float)
    X = normalize_categoricals(X, data_config.categorical_features)

    surv, pred_time = predict_pipeline(bundle["pipeline"], X, times)
    frame = predictions_frame(surv, pred_time, times, row_ids=df.index.to_numpy())
    frame.insert(0, "family", bundle["family"])

    ensure_dir(predictions_dir)
    output_path = os.path.join(
        predictions_dir, versioned_name("complaint_predictions", run_type=run_type) + ".csv"
    )
    frame.to_csv(output_path, index=False)
    logger.info(f"Predictions for {len(df):,} complaints at {len(times)} times saved to: {output_path}")
    return output_path
