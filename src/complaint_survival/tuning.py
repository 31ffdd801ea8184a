"""Model families and validation-set tuning.

A model family pairs one preprocessing recipe with one survival model and
a list of candidate hyperparameter settings. Every candidate is fitted on
the training subset and scored on the validation subset.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import clone
from sklearn.model_selection import ParameterSampler
from sklearn.pipeline import Pipeline

from complaint_survival.config import DataConfig, ExecutionConfig, ModelHyperparameters
from complaint_survival.metrics import evaluate_predictions
from complaint_survival.models import CoxnetWrapper, ForestWrapper, WeibullAFTWrapper
from complaint_survival.predict import predict_pipeline
from complaint_survival.preprocessing import make_pipeline, make_preprocessor
from complaint_survival.utils import canonical_params
from complaint_survival.logging_config import ProgressLogger, capture_warnings, log_performance
from complaint_survival.timing import Timer
from complaint_survival.tracking import safe_log_metrics

RESULT_COLUMNS = ["family", "config_id", "metric", "eval_time", "value"]


def config_id(params: dict) -> str:
    """Canonical identifier of a hyperparameter setting.

    Example:
        >>> config_id({"model__penalty": 0.01})
        '{"model__penalty": 0.01}'
    """
    return json.dumps(canonical_params(params), sort_keys=True)


@dataclass
class ModelFamily:
    """A recipe, a model and its candidate settings.

    Attributes:
        name: Family identifier ("weibull_aft", "coxnet", "forest")
        recipe: Preprocessing recipe name
        pipeline: Unfitted pipeline (recipe, variance filter, model)
        candidates: Parameter dicts for ``Pipeline.set_params``
        description: Human-readable label for reports
    """
    name: str
    recipe: str
    pipeline: Pipeline
    candidates: List[dict] = field(default_factory=list)
    description: str = ""


def _forest_candidates(hp: ModelHyperparameters, seed: int) -> List[dict]:
    grid = {
        "model__max_features": list(hp.forest_max_features),
        "model__min_samples_split": list(hp.forest_min_samples_split),
    }
    n_total = len(grid["model__max_features"]) * len(grid["model__min_samples_split"])
    sampler = ParameterSampler(grid, n_iter=min(hp.forest_grid_size, n_total), random_state=seed)
    return [canonical_params(p) for p in sampler]


def build_families(
    hyperparameters: Optional[ModelHyperparameters] = None,
    data_config: Optional[DataConfig] = None,
    seed: int = 403,
    families: Optional[Sequence[str]] = None,
) -> Dict[str, ModelFamily]:
    """Construct the model families to tune.

    - ``weibull_aft``: "other" recipe + Weibull AFT, one setting
    - ``coxnet``: "dummies" recipe + Coxnet, one setting per penalty
    - ``forest``: "unknown" recipe + random survival forest, a seeded
      random draw from the max_features x min_samples_split grid

    Args:
        hyperparameters: Grids and fixed settings. Defaults to ModelHyperparameters()
        data_config: Column layout and recipe thresholds. Defaults to DataConfig()
        seed: Seed for the forest grid draw and the forest itself
        families: Subset of family names to build (all if None)

    Returns:
        Dictionary mapping family names to ModelFamily, in the requested order

    Raises:
        ValueError: If an unknown family is requested

    Example:
        >>> fams = build_families(seed=403)
        >>> {k: len(v.candidates) for k, v in fams.items()}
        {'weibull_aft': 1, 'coxnet': 10, 'forest': 10}
    """
    hp = hyperparameters or ModelHyperparameters()
    cfg = data_config or DataConfig()

    def recipe(name: str):
        return make_preprocessor(
            name,
            numeric=list(cfg.numeric_features),
            categorical=list(cfg.categorical_features),
            rare_threshold=cfg.rare_threshold,
            unknown_level=cfg.unknown_level,
            other_level=cfg.other_level,
        )

    available = {
        "weibull_aft": lambda: ModelFamily(
            name="weibull_aft",
            recipe="other",
            pipeline=make_pipeline(
                recipe("other"),
                WeibullAFTWrapper(
                    penalizer=hp.weibull_penalizer,
                    l1_ratio=hp.weibull_l1_ratio,
                    min_duration=cfg.min_duration,
                ),
            ),
            candidates=[{"model__penalizer": float(hp.weibull_penalizer)}],
            description="Weibull accelerated failure time regression",
        ),
        "coxnet": lambda: ModelFamily(
            name="coxnet",
            recipe="dummies",
            pipeline=make_pipeline(recipe("dummies"), CoxnetWrapper(l1_ratio=hp.coxnet_l1_ratio)),
            candidates=[{"model__penalty": float(p)} for p in hp.coxnet_penalties],
            description="Penalized Cox proportional hazards regression",
        ),
        "forest": lambda: ModelFamily(
            name="forest",
            recipe="unknown",
            pipeline=make_pipeline(
                recipe("unknown"),
                ForestWrapper(
                    n_estimators=hp.forest_n_estimators,
                    min_samples_leaf=hp.forest_min_samples_leaf,
                    random_state=seed,
                ),
            ),
            candidates=_forest_candidates(hp, seed),
            description="Random survival forest",
        ),
    }

    names = list(families) if families is not None else list(available)
    unknown = [n for n in names if n not in available]
    if unknown:
        raise ValueError(f"Unknown model families {unknown}. Choose from {list(available)}")
    return {n: available[n]() for n in names}


def fit_candidate(family: ModelFamily, params: dict, X_fit, y_fit) -> Pipeline:
    """Clone the family pipeline, apply ``params`` and fit it."""
    pipe = clone(family.pipeline)
    pipe.set_params(**params)
    return pipe.fit(X_fit, y_fit)


def evaluate_candidate(
    family: ModelFamily,
    params: dict,
    X_train: pd.DataFrame,
    y_train: np.ndarray,
    X_eval: pd.DataFrame,
    y_eval: np.ndarray,
    times: np.ndarray,
) -> pd.DataFrame:
    """Fit one candidate on the training data and score it.

    Returns:
        Long metric frame with ``family`` and ``config_id`` columns added
    """
    pipe = fit_candidate(family, params, X_train, y_train)
    surv, pred_time = predict_pipeline(pipe, X_eval, times)
    metrics = evaluate_predictions(y_train, y_eval, surv, pred_time, times)
    metrics.insert(0, "config_id", config_id(params))
    metrics.insert(0, "family", family.name)
    return metrics


def sort_results(results: pd.DataFrame) -> pd.DataFrame:
    """Order a metric frame canonically, independent of evaluation order."""
    return results.sort_values(
        ["family", "config_id", "metric", "eval_time"],
        na_position="last",
        kind="mergesort",
    ).reset_index(drop=True)


def tune_family(
    family: ModelFamily,
    X_train: pd.DataFrame,
    y_train: np.ndarray,
    X_val: pd.DataFrame,
    y_val: np.ndarray,
    times: np.ndarray,
    execution_config: Optional[ExecutionConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """Score every candidate of one family on the validation subset.

    Candidates run through ``joblib.Parallel`` when the execution
    configuration asks for more than one job.

    Returns:
        Sorted long metric frame for all candidates
    """
    execution_config = execution_config or ExecutionConfig()
    logger = logger or logging.getLogger(f"complaint_survival.models.{family.name}")

    if execution_config.is_parallel() and len(family.candidates) > 1:
        logger.info(f"Parallel tuning of {len(family.candidates)} candidates with {execution_config.n_jobs} jobs")
        frames = Parallel(
            n_jobs=execution_config.n_jobs,
            verbose=execution_config.verbose,
            backend=execution_config.backend,
        )(
            delayed(evaluate_candidate)(family, params, X_train, y_train, X_val, y_val, times)
            for params in family.candidates
        )
    else:
        logger.info(f"Sequential tuning of {len(family.candidates)} candidates")
        progress = ProgressLogger(logger, total=len(family.candidates), desc=f"{family.name} candidates", track="ibs")
        frames = []
        for params in family.candidates:
            res = evaluate_candidate(family, params, X_train, y_train, X_val, y_val, times)
            frames.append(res)
            ibs = res.loc[res["metric"] == "brier_survival_integrated", "value"].iloc[0]
            progress.update(1, metrics={"ibs": float(ibs)})
        progress.finish()

    return sort_results(pd.concat(frames, ignore_index=True))


def tune_families(
    families: Dict[str, ModelFamily],
    X_train: pd.DataFrame,
    y_train: np.ndarray,
    X_val: pd.DataFrame,
    y_val: np.ndarray,
    eval_times,
    execution_config: Optional[ExecutionConfig] = None,
    logger: Optional[logging.Logger] = None,
    track: bool = False,
) -> pd.DataFrame:
    """Tune every family on the validation subset.

    Args:
        families: Output of :func:`build_families`
        X_train, y_train: Training subset
        X_val, y_val: Validation subset
        eval_times: Evaluation horizons
        execution_config: Parallelization settings
        logger: Logger instance
        track: Log per-candidate validation metrics to the active MLflow run

    Returns:
        Long metric frame with columns family, config_id, metric,
        eval_time, value, sorted canonically

    Example:
        >>> results = tune_families(build_families(), X_tr, y_tr, X_va, y_va, range(0, 301, 30))
        >>> results["family"].unique()
        array(['coxnet', 'forest', 'weibull_aft'], dtype=object)
    """
    logger = logger or logging.getLogger("complaint_survival.tuning")
    times = np.asarray(eval_times, dtype=float)
    frames = []

    for name, family in families.items():
        family_logger = logging.getLogger(f"complaint_survival.models.{name}")
        logger.info(f"=== Tuning {name} ({family.recipe} recipe, {len(family.candidates)} candidates) ===")

        with Timer(family_logger, f"{name} tuning"):
            with capture_warnings(family_logger, context=name):
                res = tune_family(
                    family, X_train, y_train, X_val, y_val, times,
                    execution_config=execution_config, logger=family_logger,
                )
        frames.append(res)

        ibs = res[res["metric"] == "brier_survival_integrated"]
        best = ibs.sort_values(["value", "config_id"], kind="mergesort").iloc[0]
        log_performance(family_logger, f"{name} best validation IBS", ibs=round(float(best["value"]), 4))

        if track:
            for step, (_, row) in enumerate(ibs.iterrows()):
                safe_log_metrics({f"{name}.val_brier_survival_integrated": row["value"]}, step=step, logger=logger)

    return sort_results(pd.concat(frames, ignore_index=True))
