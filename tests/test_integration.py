"""
Integration tests for the complaint survival analysis end-to-end.

These tests run the whole workflow (cleaning, splitting, tuning, selection,
final refit, report and model bundle) on a synthetic snapshot, catching
issues that unit tests miss (pipeline compatibility, file layout, CLI).
"""

import os
import pytest
import pandas as pd
import numpy as np
import mlflow

from complaint_survival.config import ComplaintSurvivalConfig
from complaint_survival.data import generate_synthetic_complaints
from complaint_survival.main import main
from complaint_survival.selection import select_best
from complaint_survival.train import run_analysis
from complaint_survival.utils import get_output_paths

# Mark all tests in this file as integration tests
pytestmark = pytest.mark.integration

EXPECTED_FILES = [
    "split", "validation_metrics", "best_configurations", "test_metrics",
    "test_predictions", "km", "map", "val_brier", "val_auc", "test_brier",
    "curves", "markdown", "docx", "model", "config",
]


def _fast_config() -> ComplaintSurvivalConfig:
    config = ComplaintSurvivalConfig.for_run_type("sample")
    config.hyperparameters.coxnet_penalties = [0.001, 0.01, 0.1]
    config.hyperparameters.forest_n_estimators = 25
    config.hyperparameters.forest_min_samples_leaf = 5
    config.hyperparameters.forest_grid_size = 3
    return config


@pytest.fixture(scope="module")
def snapshot():
    """Synthetic snapshot shared by the end-to-end runs."""
    return generate_synthetic_complaints(n=900, seed=42)


@pytest.fixture(scope="module")
def analysis(snapshot, tmp_path_factory):
    """One tracked analysis run."""
    config = _fast_config()
    config.analysis.track_with_mlflow = True
    paths = get_output_paths("sample", base_dir=str(tmp_path_factory.mktemp("run")))
    return run_analysis(snapshot, config=config, paths=paths), paths


class TestEndToEndPipeline:
    """Test complete analysis execution."""

    def test_all_outputs_written(self, analysis):
        """Every table, figure, report and the model bundle exist."""
        result, paths = analysis

        for key in EXPECTED_FILES:
            assert key in result.files, key
            assert os.path.exists(result.files[key]), result.files[key]
        assert os.path.isdir(paths["mlruns"])

    def test_every_family_tuned(self, analysis):
        """Validation results hold every candidate of every family."""
        result, _ = analysis
        counts = result.results.groupby("family")["config_id"].nunique().to_dict()

        assert counts == {"weibull_aft": 1, "coxnet": 3, "forest": 3}

    def test_selection_consistent(self, analysis):
        """The winner has the best validation score and its best configuration is refitted."""
        result, _ = analysis

        assert result.winner == result.best.loc[0, "family"]
        assert result.final.family == result.winner
        assert result.final.params == select_best(result.results, family=result.winner)

    def test_test_metrics(self, analysis):
        """Test metrics are in range and the time-zero Brier score is small."""
        result, _ = analysis
        metrics = result.final.metrics

        brier0 = metrics[(metrics["metric"] == "brier_survival") & (metrics["eval_time"] == 0.0)]["value"].item()
        assert brier0 < 0.05
        assert 0.0 < result.final.metric("brier_survival_integrated") < 0.25
        assert 0.5 < result.final.metric("concordance_survival") <= 1.0

    def test_split_file(self, analysis):
        """The split assignment covers every cleaned record once."""
        result, _ = analysis
        split = pd.read_csv(result.files["split"])

        assert len(split) == result.split.n
        assert split["subset"].value_counts().to_dict() == {
            "train": len(result.split.train),
            "validation": len(result.split.validation),
            "test": len(result.split.test),
        }

    def test_test_predictions(self, analysis):
        """Test predictions are long format with one row per complaint and time."""
        result, _ = analysis
        pred = pd.read_csv(result.files["test_predictions"])

        assert len(pred) == len(result.split.test) * 11
        assert set(pred["row"]) == set(result.split.test)

    def test_saved_config_reloads(self, analysis):
        """The saved configuration reproduces the run settings."""
        result, _ = analysis
        loaded = ComplaintSurvivalConfig.load(result.files["config"])

        assert loaded.hyperparameters.coxnet_penalties == [0.001, 0.01, 0.1]
        assert loaded.analysis.seed == 403

    def test_report_content(self, analysis):
        """The Markdown report names the selected family and embeds figures."""
        result, _ = analysis
        with open(result.files["markdown"], encoding="utf-8") as f:
            text = f.read()

        assert "## Final model" in text
        assert "![Kaplan-Meier overview](km_overview.png)" in text
        assert "brier_survival_integrated" in text


class TestTrackingFailure:
    """Tracking problems never abort an analysis."""

    def test_refused_backend(self, snapshot, tmp_path, monkeypatch):
        """A tracked run whose MLflow backend refuses to start completes untracked."""
        def refuse(name):
            raise mlflow.exceptions.MlflowException("tracking backend is in maintenance mode")

        monkeypatch.setattr(mlflow, "get_experiment_by_name", refuse)
        config = _fast_config()
        config.analysis.families = ("coxnet",)
        config.analysis.track_with_mlflow = True
        config.analysis.write_docx = False

        result = run_analysis(snapshot, config=config,
                              paths=get_output_paths("sample", base_dir=str(tmp_path)))

        assert result.winner == "coxnet"
        assert os.path.exists(result.files["model"])
        assert mlflow.active_run() is None

    def test_sqlite_store(self, analysis):
        """The default tracked run writes to a SQLite store under mlruns."""
        _, paths = analysis

        assert os.path.exists(os.path.join(paths["mlruns"], "mlflow.db"))


class TestReproducibility:
    """Identical inputs and seeds give identical outputs."""

    def test_rerun_identical(self, analysis, snapshot, tmp_path):
        """A second run reproduces the split, the validation metrics and the winner."""
        first, _ = analysis
        config = _fast_config()
        config.analysis.write_docx = False
        second = run_analysis(snapshot, config=config,
                              paths=get_output_paths("sample", base_dir=str(tmp_path)))

        np.testing.assert_array_equal(first.split.train, second.split.train)
        np.testing.assert_array_equal(first.split.test, second.split.test)
        pd.testing.assert_frame_equal(first.results, second.results)
        assert first.winner == second.winner
        assert first.final.params == second.final.params
        np.testing.assert_array_equal(first.final.survival, second.final.survival)


class TestCommandLine:
    """Test the command line entry point."""

    def test_analysis_then_predict(self, tmp_path):
        """The CLI runs the analysis, then scores new complaints with the saved model."""
        config_path = str(tmp_path / "fast.json")
        _fast_config().save(config_path)
        out_dir = str(tmp_path / "outputs")

        code = main(["--synthetic", "600", "--output-dir", out_dir, "--config", config_path, "--no-docx"])
        assert code == 0
        assert os.listdir(os.path.join(out_dir, "sample", "models"))
        assert os.path.exists(os.path.join(out_dir, "sample", "report", "report.md"))
        assert not os.path.exists(os.path.join(out_dir, "sample", "report", "report.docx"))

        new = generate_synthetic_complaints(n=20, seed=9).drop(columns=["status", "days_to_disposition"])
        input_path = tmp_path / "open_complaints.csv"
        new.to_csv(input_path, index=False)

        code = main(["--input", str(input_path), "--predict-only", "--output-dir", out_dir])
        assert code == 0
        pred_files = [f for f in os.listdir(os.path.join(out_dir, "sample", "predictions"))
                      if f.startswith("sample_complaint_predictions_")]
        assert len(pred_files) == 1
        pred = pd.read_csv(os.path.join(out_dir, "sample", "predictions", pred_files[0]))
        assert len(pred) == 20 * 11

    def test_missing_input(self, tmp_path):
        """A missing input file exits with status 1."""
        assert main(["--input", str(tmp_path / "nope.csv"), "--output-dir", str(tmp_path)]) == 1

    def test_no_source(self, tmp_path):
        """Neither input nor synthetic data exits with status 1."""
        assert main(["--output-dir", str(tmp_path)]) == 1
