"""Configuration for the complaint survival analysis.

Dataclass configurations for data handling, splitting, model grids,
evaluation and parallel execution. The master configuration can be
serialized to/from JSON so a run can be reproduced exactly.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional
import os
import multiprocessing
import json

import numpy as np


@dataclass
class ExecutionConfig:
    """Configuration for parallel candidate evaluation.

    Attributes:
        n_jobs: Number of parallel jobs. -1 means use all cores, 1 means sequential
        verbose: Verbosity level for joblib (0=silent, 10=progress bar, 50=detailed)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')

    Example:
        >>> config = ExecutionConfig()  # sequential
        >>> config = ExecutionConfig(n_jobs=-1)  # all cores
    """
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"

    def __post_init__(self):
        """Validate and normalize configuration."""
        if self.n_jobs == -1:
            self.n_jobs = multiprocessing.cpu_count()
        elif self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or positive, got {self.n_jobs}")

    def is_parallel(self) -> bool:
        """Check if parallel execution is enabled.

        Returns:
            True if more than one job is configured

        Example:
            >>> ExecutionConfig(n_jobs=4).is_parallel()
            True
        """
        return self.n_jobs > 1

    def __str__(self) -> str:
        return (
            f"ExecutionConfig(n_jobs={self.n_jobs}, "
            f"backend={self.backend}, "
            f"parallel={self.is_parallel()})"
        )


# ============================================================================
# Model Hyperparameters Configuration
# ============================================================================

def _default_penalties() -> list:
    return [float(p) for p in np.logspace(-4, 0, 10)]


@dataclass
class ModelHyperparameters:
    """Hyperparameters and search grids for the three model families.

    Attributes:
        weibull_penalizer: Coefficient penalty for the Weibull AFT fit
        weibull_l1_ratio: L1 share of the Weibull penalty
        coxnet_l1_ratio: Balance between L1 (1.0) and L2 (0.0) penalty for Coxnet
        coxnet_penalties: Penalty strengths searched for Coxnet
        forest_n_estimators: Number of trees in the survival forest
        forest_min_samples_leaf: Minimum samples in a forest leaf
        forest_max_features: Candidate fractions of predictors sampled per split
        forest_min_samples_split: Candidate minimum node sizes for a split
        forest_grid_size: Number of random forest configurations to try
    """
    weibull_penalizer: float = 0.01
    """Ridge-type penalty for lifelines' WeibullAFTFitter.

    A small value keeps the fit stable when rare dummy columns are
    nearly collinear. Set to 0.0 for the unpenalized model.
    """

    weibull_l1_ratio: float = 0.0
    """L1 share of the Weibull penalty. Valid range: [0.0, 1.0]."""

    coxnet_l1_ratio: float = 1.0
    """Balance between L1 (1.0) and L2 (0.0) penalty for Coxnet.

    Valid range: (0.0, 1.0]
    - 1.0 = Lasso (default, matches glmnet's mixture default)
    - 0.5 = Elastic net
    """

    coxnet_penalties: list = field(default_factory=_default_penalties)
    """Penalty strengths searched for Coxnet (10 log-spaced values in [1e-4, 1])."""

    forest_n_estimators: int = 200
    """Number of trees in the survival forest.

    Valid range: [10, 2000]
    - Sample data: 200
    - Production data: 500
    """

    forest_min_samples_leaf: int = 3
    """Minimum samples required in a forest leaf."""

    forest_max_features: list = field(
        default_factory=lambda: [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]
    )
    """Fractions of the encoded predictors sampled at each split (mtry)."""

    forest_min_samples_split: list = field(
        default_factory=lambda: [2, 5, 10, 15, 20, 30, 40]
    )
    """Minimum number of samples required to split a node (min_n)."""

    forest_grid_size: int = 10
    """Number of random (max_features, min_samples_split) draws to evaluate."""

    @classmethod
    def for_environment(cls, run_type: str) -> "ModelHyperparameters":
        """Create hyperparameters suited to a run type.

        Args:
            run_type: One of "sample", "production"

        Returns:
            ModelHyperparameters instance with appropriate defaults

        Example:
            >>> ModelHyperparameters.for_environment("production").forest_n_estimators
            500
        """
        if run_type == "production":
            return cls(forest_n_estimators=500, forest_min_samples_leaf=5)
        return cls()


# ============================================================================
# Data Configuration
# ============================================================================

@dataclass
class DataConfig:
    """Column layout and event definition for complaint records.

    Attributes:
        time_column: Column with elapsed days since the complaint was filed
        status_column: Column with the resolution status
        event_statuses: Status labels meaning the complaint was resolved
        censored_statuses: Status labels meaning the complaint is still open
        numeric_features: Numeric predictor columns
        categorical_features: Categorical predictor columns
        rare_threshold: Minimum training frequency for a level to keep its own column
        unknown_level: Label given to missing categorical values
        other_level: Label given to rare and novel categorical levels
        min_duration: Floor applied to durations for the parametric fit
    """
    time_column: str = "days_to_disposition"
    """Column with elapsed days since filing."""

    status_column: str = "status"
    """Column with the resolution status."""

    event_statuses: tuple[str, ...] = ("CLOSED",)
    """Status labels (case-insensitive) encoded as event occurred."""

    censored_statuses: tuple[str, ...] = ("ACTIVE",)
    """Status labels (case-insensitive) encoded as right-censored."""

    numeric_features: tuple[str, ...] = ("latitude", "longitude")
    """Numeric predictors. Missing values are median-imputed."""

    categorical_features: tuple[str, ...] = (
        "year_entered",
        "borough",
        "special_district",
        "unit",
        "community_board",
        "complaint_category",
        "complaint_priority",
    )
    """Categorical predictors. Missing values become the unknown level."""

    rare_threshold: float = 0.02
    """Levels below this training frequency collapse into the other level.

    Valid range: [0.0, 1.0)
    """

    unknown_level: str = "unknown"
    """Level inserted for missing categorical values."""

    other_level: str = "other"
    """Level used for rare and previously unseen categorical values."""

    min_duration: float = 0.5
    """Durations below this (same-day closures) are clipped for the Weibull fit."""


@dataclass
class SplitConfig:
    """Configuration for the training / validation / test split.

    Attributes:
        train_prop: Share of records used for fitting
        validation_prop: Share of records used for model comparison
        seed: Random seed for the split
        stratify_on_event: Keep the resolved share equal across subsets
    """
    train_prop: float = 0.6
    validation_prop: float = 0.2
    seed: int = 403
    stratify_on_event: bool = True

    def __post_init__(self):
        if not 0.0 < self.train_prop < 1.0:
            raise ValueError(f"train_prop must be in (0, 1), got {self.train_prop}")
        if not 0.0 < self.validation_prop < 1.0:
            raise ValueError(f"validation_prop must be in (0, 1), got {self.validation_prop}")
        if self.train_prop + self.validation_prop >= 1.0:
            raise ValueError(
                "train_prop + validation_prop must leave room for a test subset, "
                f"got {self.train_prop} + {self.validation_prop}"
            )

    @property
    def test_prop(self) -> float:
        return 1.0 - self.train_prop - self.validation_prop


# ============================================================================
# Analysis Configuration
# ============================================================================

@dataclass
class AnalysisConfig:
    """Configuration for evaluation, selection and reporting.

    Attributes:
        eval_times: Evaluation horizons in days
        seed: Seed for random grids and forests
        optimization_metric: Metric used to pick configurations and families
        families: Model families to fit
        track_with_mlflow: Whether to log runs to MLflow
        tracking_uri: Optional MLflow tracking URI
        write_docx: Whether to convert the Markdown report to Word
        n_curves: Number of test complaints drawn in the survival-curve plot
    """
    eval_times: tuple[float, ...] = tuple(float(t) for t in range(0, 301, 30))
    """Evaluation horizons (days): 0, 30, ..., 300."""

    seed: int = 403
    """Seed for the forest grid and the forest itself."""

    optimization_metric: str = "brier_survival_integrated"
    """Metric minimized on the validation subset to select configurations."""

    families: tuple[str, ...] = ("weibull_aft", "coxnet", "forest")
    """Model families to tune and compare."""

    track_with_mlflow: bool = False
    """Log parameters, metrics and report artifacts to MLflow."""

    tracking_uri: Optional[str] = None
    """MLflow tracking URI. Defaults to a SQLite store in <output>/mlruns when tracking is on."""

    write_docx: bool = True
    """Render report.docx next to report.md."""

    n_curves: int = 5
    """Number of test complaints drawn in the predicted survival plot."""


# ============================================================================
# Master Configuration
# ============================================================================

@dataclass
class ComplaintSurvivalConfig:
    """Master configuration for the complaint survival analysis.

    Attributes:
        hyperparameters: Model hyperparameter configuration
        data: Column layout and event definition
        split: Training / validation / test split
        analysis: Evaluation, selection and reporting configuration
        execution: Parallelization configuration
        run_type: Type of run ("sample", "production")
        description: Optional description of this configuration

    Example:
        >>> config = ComplaintSurvivalConfig.for_run_type("production")
        >>> config.hyperparameters.forest_n_estimators
        500
        >>> config.save("configs/production.json")
        >>> loaded = ComplaintSurvivalConfig.load("configs/production.json")
    """
    hyperparameters: ModelHyperparameters = field(default_factory=ModelHyperparameters)
    data: DataConfig = field(default_factory=DataConfig)
    split: SplitConfig = field(default_factory=SplitConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    run_type: str = "sample"
    """Type of run: 'sample' or 'production'."""

    description: str = ""

    @classmethod
    def for_run_type(cls, run_type: str) -> "ComplaintSurvivalConfig":
        """Create configuration for a run type.

        Args:
            run_type: One of "sample", "production"

        Returns:
            Configured instance with appropriate defaults
        """
        if run_type == "production":
            exec_config = ExecutionConfig(n_jobs=-1, verbose=10)
        else:
            exec_config = ExecutionConfig()

        return cls(
            hyperparameters=ModelHyperparameters.for_environment(run_type),
            execution=exec_config,
            run_type=run_type,
        )

    def to_dict(self) -> dict:
        """Convert configuration to a JSON-compatible dictionary.

        Example:
            >>> ComplaintSurvivalConfig().to_dict()["run_type"]
            'sample'
        """
        def _to_plain(obj):
            if hasattr(obj, "__dataclass_fields__"):
                return {k: _to_plain(v) for k, v in obj.__dict__.items()}
            elif isinstance(obj, (list, tuple)):
                return [_to_plain(v) for v in obj]
            elif isinstance(obj, np.generic):
                return obj.item()
            return obj

        return _to_plain(self)

    def save(self, path: str) -> None:
        """Save configuration to a JSON file.

        Args:
            path: Path to output JSON file
        """
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ComplaintSurvivalConfig":
        """Load configuration from a JSON file.

        Args:
            path: Path to input JSON file

        Returns:
            ComplaintSurvivalConfig instance
        """
        with open(path) as f:
            data = json.load(f)

        data_cfg = dict(data["data"])
        for key in ("event_statuses", "censored_statuses", "numeric_features", "categorical_features"):
            data_cfg[key] = tuple(data_cfg[key])
        analysis_cfg = dict(data["analysis"])
        analysis_cfg["eval_times"] = tuple(float(t) for t in analysis_cfg["eval_times"])
        analysis_cfg["families"] = tuple(analysis_cfg["families"])

        return cls(
            hyperparameters=ModelHyperparameters(**data["hyperparameters"]),
            data=DataConfig(**data_cfg),
            split=SplitConfig(**data["split"]),
            analysis=AnalysisConfig(**analysis_cfg),
            execution=ExecutionConfig(**data["execution"]),
            run_type=data["run_type"],
            description=data.get("description", ""),
        )
