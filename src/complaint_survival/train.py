from __future__ import annotations
import os
import logging
import contextlib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional
import numpy as np
import pandas as pd

from complaint_survival.config import ComplaintSurvivalConfig
from complaint_survival.data import (
    DataSplit,
    clean_complaints,
    split_X_y,
    split_train_validation_test,
)
from complaint_survival.predict import save_final_model
from complaint_survival.report import write_report
from complaint_survival.selection import LastFitResult, last_fit, select_best, select_family
from complaint_survival.tuning import build_families, tune_families
from complaint_survival.utils import ensure_dir, evaluation_times, get_output_paths
from complaint_survival.tracking import (
    start_run,
    safe_log_params,
    safe_log_metrics,
    safe_log_artifact,
    safe_log_dict,
)
from complaint_survival.logging_config import log_performance
from complaint_survival.timing import Timer, log_execution_time


@dataclass
class AnalysisResult:
    """Everything produced by one analysis run.

    Attributes:
        split: Training / validation / test assignment
        results: Validation metrics for every candidate (long format)
        best: Best configuration per family, ranked
        winner: Selected family
        final: Refit of the selected configuration scored on test
        files: Written files keyed by short name
    """
    split: DataSplit
    results: pd.DataFrame
    best: pd.DataFrame
    winner: str
    final: LastFitResult
    files: Dict[str, str] = field(default_factory=dict)


def _tracking_context(config: ComplaintSurvivalConfig, paths: dict, logger: logging.Logger):
    if not config.analysis.track_with_mlflow:
        return contextlib.nullcontext()
    mlruns = Path(paths["mlruns"]).resolve()
    uri = config.analysis.tracking_uri
    if uri is None:
        ensure_dir(str(mlruns))
        uri = f"sqlite:///{mlruns / 'mlflow.db'}"
    return start_run(
        run_name=f"complaint_survival_{config.run_type}",
        tags={"run_type": config.run_type},
        tracking_uri=uri,
        artifact_location=(mlruns / "artifacts").as_uri(),
        logger=logger,
    )


@log_execution_time()
def run_analysis(
    df: pd.DataFrame,
    config: Optional[ComplaintSurvivalConfig] = None,
    paths: Optional[dict] = None,
    logger: Optional[logging.Logger] = None,
) -> AnalysisResult:
    """Run the complete complaint survival analysis.

    1. Cleans and encodes the complaint records
    2. Splits them into training / validation / test subsets
    3. Tunes every model family on the validation subset
    4. Selects the best configuration per family and the winning family
    5. Refits the winner on training + validation and scores it on test
    6. Writes metric tables, predictions, the report and the model bundle

    Args:
        df: Raw complaint records
        config: Master configuration. Defaults to ComplaintSurvivalConfig()
        paths: Output directories from get_output_paths (created from the
            run type if None)
        logger: Logger instance

    Returns:
        AnalysisResult

    Example:
        >>> df = generate_synthetic_complaints(n=2000, seed=42)
        >>> result = run_analysis(df, ComplaintSurvivalConfig.for_run_type("sample"))
        >>> result.winner
        'coxnet'
    """
    config = config or ComplaintSurvivalConfig()
    paths = paths or get_output_paths(config.run_type)
    logger = logger or logging.getLogger("complaint_survival.train")
    data_cfg = config.data
    metric = config.analysis.optimization_metric
    times = evaluation_times(config.analysis.eval_times)
    files: Dict[str, str] = {}

    with Timer(logger, "Data preparation"):
        clean = clean_complaints(df, data_cfg)
        X, y = split_X_y(clean, data_cfg)
        split = split_train_validation_test(y, config.split)
    logger.info(
        f"{split.n:,} complaints ({y['event'].mean():.1%} closed): "
        f"{len(split.train):,} train, {len(split.validation):,} validation, {len(split.test):,} test"
    )

    files["split"] = os.path.join(paths["artifacts"], "split_assignment.csv")
    pd.DataFrame({"row": np.arange(split.n), "subset": split.assignment()}).to_csv(files["split"], index=False)

    families = build_families(
        config.hyperparameters,
        data_cfg,
        seed=config.analysis.seed,
        families=config.analysis.families,
    )
    logger.info(f"Built {len(families)} model families: {list(families)}")

    track = config.analysis.track_with_mlflow
    with _tracking_context(config, paths, logger):
        if track:
            safe_log_params({"n_records": split.n, **config.to_dict()}, logger=logger)

        results = tune_families(
            families,
            X.iloc[split.train], y[split.train],
            X.iloc[split.validation], y[split.validation],
            times,
            execution_config=config.execution,
            logger=logger,
            track=track,
        )
        best, winner = select_family(results, metric=metric)
        params = select_best(results, metric=metric, family=winner)
        logger.info(f"Winning configuration: {winner} {params}")

        fit_idx = split.train_validation
        final = last_fit(
            families[winner], params,
            X.iloc[fit_idx], y[fit_idx],
            X.iloc[split.test], y[split.test],
            times,
            row_ids=split.test,
        )
        log_performance(
            logger,
            "Test evaluation",
            family=winner,
            ibs=round(final.metric("brier_survival_integrated"), 4),
            cindex=round(final.metric("concordance_survival"), 4),
        )

        files["validation_metrics"] = os.path.join(paths["artifacts"], "validation_metrics.csv")
        files["best_configurations"] = os.path.join(paths["artifacts"], "best_configurations.csv")
        files["test_metrics"] = os.path.join(paths["artifacts"], "test_metrics.csv")
        files["test_predictions"] = os.path.join(paths["predictions"], "test_predictions.csv")
        results.to_csv(files["validation_metrics"], index=False)
        best.to_csv(files["best_configurations"], index=False)
        final.metrics.to_csv(files["test_metrics"], index=False)
        final.predictions.to_csv(files["test_predictions"], index=False)

        with Timer(logger, "Report"):
            report_files = write_report(
                paths["report"], clean, y, split, results, best, final,
                data_config=data_cfg,
                write_docx=config.analysis.write_docx,
                n_curves=config.analysis.n_curves,
                metric=metric,
            )
        files.update(report_files)

        files["model"] = save_final_model(
            {
                "pipeline": final.pipeline,
                "family": winner,
                "params": params,
                "eval_times": times.tolist(),
                "data_config": asdict(data_cfg),
                "run_type": config.run_type,
            },
            paths["models"],
            run_type=config.run_type,
        )
        files["config"] = os.path.join(paths["artifacts"], "config.json")
        config.save(files["config"])

        if track:
            scalars = final.metrics[final.metrics["eval_time"].isna()]
            safe_log_metrics({f"test.{m}": v for m, v in zip(scalars["metric"], scalars["value"])}, logger=logger)
            safe_log_dict("selected_configuration", {"family": winner, "params": params}, logger=logger)
            for key in ("validation_metrics", "test_metrics", "markdown", "docx"):
                if key in files:
                    safe_log_artifact(files[key], logger=logger)

    logger.info(f"[{config.run_type.upper()}] Analysis complete. Outputs in {paths['base_dir']}")
    return AnalysisResult(split=split, results=results, best=best, winner=winner, final=final, files=files)
