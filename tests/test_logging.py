"""Unit tests for logging, timing and tracking helpers."""
import logging
import warnings
import pytest
import mlflow
from complaint_survival.logging_config import (
    LOGGER_NAME,
    ProgressLogger,
    WarningLogger,
    capture_warnings,
    log_performance,
    setup_logging,
)
from complaint_survival.timing import Timer, log_execution_time
from complaint_survival.tracking import (
    flatten_params,
    safe_log_artifact,
    safe_log_metrics,
    safe_log_params,
    start_run,
)


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_log_files(self, tmp_path):
        """Main, performance and warnings files are created."""
        logger = setup_logging(str(tmp_path / "logs"), console_output=False)
        logger.warning("something odd")
        log_performance(logger, "coxnet tuned", ibs=0.08)
        for handler in logger.handlers:
            handler.flush()

        names = {p.name.split("_")[0] for p in (tmp_path / "logs").iterdir()}
        assert names == {"main", "performance", "warnings"}

        perf = next((tmp_path / "logs").glob("performance_*.log")).read_text()
        assert "coxnet tuned | ibs=0.08" in perf
        assert "something odd" not in perf

        warn = next((tmp_path / "logs").glob("warnings_*.log")).read_text()
        assert "something odd" in warn

    def test_debug_file(self, tmp_path):
        """A debug file is added at DEBUG level."""
        setup_logging(str(tmp_path), log_level=logging.DEBUG, console_output=False)

        assert list(tmp_path.glob("debug_*.log"))

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        """Calling setup twice does not duplicate handlers."""
        setup_logging(str(tmp_path / "a"), console_output=False)
        logger = setup_logging(str(tmp_path / "b"), console_output=False)

        assert len(logger.handlers) == 3
        assert logger.name == LOGGER_NAME


class TestTiming:
    """Tests for Timer and log_execution_time."""

    def test_timer_logs_completion(self, caplog):
        """Timer logs start and completion with duration."""
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with Timer(logger, "block") as timer:
                pass

        assert "Starting: block" in caplog.text
        assert "Completed: block | duration_sec=" in caplog.text
        assert timer.duration >= 0.0

    def test_timer_logs_failure(self, caplog):
        """Exceptions are logged and propagated."""
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with pytest.raises(RuntimeError):
                with Timer(logger, "block"):
                    raise RuntimeError("boom")

        assert "block failed after" in caplog.text

    def test_decorator(self, caplog):
        """The decorator returns the result and logs the duration."""
        @log_execution_time()
        def add(a, b):
            return a + b

        with caplog.at_level(logging.INFO):
            assert add(1, 2) == 3

        assert "Completed: add" in caplog.text

    def test_decorator_reraises(self, caplog):
        """Failures are logged with the function name and re-raised."""
        @log_execution_time()
        def fail():
            raise ValueError("bad input")

        with caplog.at_level(logging.INFO):
            with pytest.raises(ValueError):
                fail()

        assert "fail failed after" in caplog.text


class TestCaptureWarnings:
    """Tests for capture_warnings and ProgressLogger."""

    def test_categorized(self, caplog):
        """Warnings are routed to the logger and counted by category."""
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with capture_warnings(logger) as wl:
                with warnings.catch_warnings():
                    warnings.simplefilter("always")
                    warnings.warn("Optimizer did not converge")
                    warnings.warn("overflow encountered in exp", RuntimeWarning)

        assert wl.summary() == {"convergence": 1, "numerical": 1}
        assert "[CONVERGENCE]" in caplog.text
        assert "Warning summary" in caplog.text

    def test_progress(self, caplog):
        """Progress lines report counts, percentages and metrics."""
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        progress = ProgressLogger(logger, total=4, desc="coxnet candidates")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            progress.update(1, metrics={"ibs": 0.08123})

        assert "coxnet candidates: 1/4 (25.0%) | ibs=0.0812" in caplog.text

    @pytest.mark.parametrize("message, category", [
        ("ConvergenceWarning: Newton-Raphson failed to converge", "convergence"),
        ("RuntimeWarning: divide by zero encountered in log", "numerical"),
        ("UserWarning: Found unknown categories in columns [0] during transform", "data"),
        ("StatisticalWarning: The diagonal of the variance_matrix_ has negative values", "statistical"),
        ("FutureWarning: the default will change", "other"),
    ])
    def test_library_messages(self, message, category):
        """Messages from the fitting libraries land in the expected category."""
        wl = WarningLogger(logging.getLogger(f"{LOGGER_NAME}.test"))

        assert wl.categorize_warning(message) == category

    def test_context_prefix(self, caplog):
        """The family name prefixes each warning and the summary."""
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with capture_warnings(logger, context="coxnet") as wl:
                with warnings.catch_warnings():
                    warnings.simplefilter("always")
                    warnings.warn("overflow encountered in exp", RuntimeWarning)

        assert wl.total == 1
        assert "[NUMERICAL] coxnet: RuntimeWarning" in caplog.text
        assert "Warning summary (coxnet): 1 warnings | numerical=1" in caplog.text

    def test_progress_tracks_best(self, caplog):
        """The best tracked value and its candidate are reported."""
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        progress = ProgressLogger(logger, total=3, desc="forest candidates", track="ibs")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            progress.update(1, metrics={"ibs": 0.09})
            progress.update(1, metrics={"ibs": 0.07})
            progress.update(1, metrics={"ibs": float("nan")})
            progress.finish()

        assert (progress.best, progress.best_step) == (0.07, 2)
        assert "forest candidates: 3/3 (100.0%) | ibs=nan | best ibs=0.0700 (#2)" in caplog.text
        assert "best ibs=0.0700 at candidate 2/3" in caplog.text

    def test_progress_maximize(self):
        """With minimize=False the highest value is kept."""
        progress = ProgressLogger(logging.getLogger(LOGGER_NAME), total=2, desc="auc", track="auc", minimize=False)
        progress.update(1, metrics={"auc": 0.7})
        progress.update(1, metrics={"auc": 0.8})

        assert progress.best == 0.8


class TestTracking:
    """Tests for the MLflow helpers."""

    def test_flatten_params(self):
        """Nested keys are joined with dots."""
        assert flatten_params({"split": {"seed": 403}, "run_type": "sample"}) == {
            "split.seed": 403, "run_type": "sample",
        }

    def test_run_logging(self, tmp_path):
        """Parameters, metrics and artifacts reach a local file store."""
        artifact = tmp_path / "notes.txt"
        artifact.write_text("ok")
        with start_run("unit_test", tags={"run_type": "sample"},
                       tracking_uri=f"sqlite:///{tmp_path / 'mlflow.db'}",
                       artifact_location=(tmp_path / "artifacts").as_uri()) as run:
            assert safe_log_params({"split": {"seed": 403}})
            assert safe_log_metrics({"ibs": 0.08, "auc": float("nan")})
            assert safe_log_artifact(str(artifact))
            assert not safe_log_artifact(str(tmp_path / "missing.txt"))

        data = mlflow.get_run(run.info.run_id).data
        assert data.params == {"split.seed": "403"}
        assert data.metrics == {"ibs": 0.08}
        assert data.tags["run_type"] == "sample"
        assert list((tmp_path / "artifacts").rglob("notes.txt"))

    def test_refused_backend_runs_untracked(self, monkeypatch, caplog):
        """A backend that refuses to start gives an empty context and logging is skipped."""
        def refuse(name):
            raise mlflow.exceptions.MlflowException("tracking backend is in maintenance mode")

        monkeypatch.setattr(mlflow, "get_experiment_by_name", refuse)
        logger = logging.getLogger(f"{LOGGER_NAME}.test")

        with caplog.at_level(logging.WARNING, logger=LOGGER_NAME):
            with start_run("unit_test", logger=logger) as run:
                assert run is None
                assert not safe_log_params({"seed": 403}, logger=logger)
                assert not safe_log_metrics({"ibs": 0.08}, logger=logger)

        assert "MLflow tracking unavailable" in caplog.text
        assert mlflow.active_run() is None

    def test_no_active_run(self):
        """Without an active run nothing is logged."""
        assert not safe_log_metrics({"ibs": 0.08})
        assert not safe_log_params({"seed": 403})
