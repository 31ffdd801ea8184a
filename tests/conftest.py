"""Pytest configuration and shared fixtures for complaint survival tests.

This module provides a synthetic complaint snapshot, a fast configuration
for end-to-end runs, temporary output directories and logger / MLflow
cleanup between tests.
"""
import logging
import pytest
import numpy as np

from complaint_survival.config import ComplaintSurvivalConfig
from complaint_survival.data import (
    clean_complaints,
    generate_synthetic_complaints,
    split_X_y,
    split_train_validation_test,
)
from complaint_survival.logging_config import LOGGER_NAME
from complaint_survival.utils import get_output_paths


@pytest.fixture(scope="session")
def complaints():
    """Synthetic snapshot of 1,200 building complaints.

    Returns:
        pd.DataFrame: Raw complaint records
    """
    return generate_synthetic_complaints(n=1200, seed=42)


@pytest.fixture(scope="session")
def clean_data(complaints):
    """Cleaned records with predictors and survival target.

    Returns:
        Tuple of (clean_df, X, y)
    """
    clean = clean_complaints(complaints)
    X, y = split_X_y(clean)
    return clean, X, y


@pytest.fixture(scope="session")
def data_split(clean_data):
    """Default 60/20/20 split of the cleaned records."""
    _, _, y = clean_data
    return split_train_validation_test(y)


@pytest.fixture(scope="session")
def train_validation(clean_data, data_split):
    """Training and validation subsets.

    Returns:
        Tuple of (X_train, y_train, X_val, y_val)
    """
    _, X, y = clean_data
    return (
        X.iloc[data_split.train], y[data_split.train],
        X.iloc[data_split.validation], y[data_split.validation],
    )


@pytest.fixture
def sample_structured_y():
    """Create small structured survival array for testing.

    Returns:
        np.ndarray: Structured array with dtype=[('event', bool), ('time', float)]
    """
    return np.array(
        [(True, 12.0), (False, 40.0), (True, 0.0), (False, 18.0), (True, 30.0)],
        dtype=[("event", bool), ("time", float)]
    )


@pytest.fixture
def fast_config():
    """Small configuration that runs every family in seconds."""
    config = ComplaintSurvivalConfig.for_run_type("sample")
    config.hyperparameters.coxnet_penalties = [0.001, 0.01, 0.1]
    config.hyperparameters.forest_n_estimators = 25
    config.hyperparameters.forest_min_samples_leaf = 5
    config.hyperparameters.forest_grid_size = 3
    return config


@pytest.fixture
def output_paths(tmp_path):
    """Output directories under a temporary root."""
    return get_output_paths("sample", base_dir=str(tmp_path / "outputs"))


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Detach handlers added by setup_logging so tests stay independent."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """End stray MLflow runs and reset the tracking URI after each test."""
    import mlflow
    yield
    if mlflow.active_run() is not None:
        mlflow.end_run()
    mlflow.set_tracking_uri(None)
