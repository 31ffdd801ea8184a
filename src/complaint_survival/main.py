"""Command line entry point for the complaint survival analysis.

Runs the full analysis on a complaint file (or a synthetic snapshot), or
scores new complaints with the latest saved final model.

Can be used as CLI or imported as a function.
"""
import argparse
import logging
import os
import sys
from typing import Optional

from complaint_survival.config import ComplaintSurvivalConfig, ExecutionConfig
from complaint_survival.data import generate_synthetic_complaints, load_data
from complaint_survival.logging_config import setup_logging
from complaint_survival.predict import generate_predictions
from complaint_survival.train import run_analysis
from complaint_survival.utils import get_output_paths


def build_config(
    run_type: str = "sample",
    config_path: Optional[str] = None,
    n_jobs: Optional[int] = None,
    write_docx: Optional[bool] = None,
    track: bool = False,
) -> ComplaintSurvivalConfig:
    """Create the run configuration from a JSON file or run-type defaults, then apply overrides."""
    if config_path:
        config = ComplaintSurvivalConfig.load(config_path)
        config.run_type = run_type
    else:
        config = ComplaintSurvivalConfig.for_run_type(run_type)

    if n_jobs is not None:
        config.execution = ExecutionConfig(
            n_jobs=n_jobs, verbose=config.execution.verbose, backend=config.execution.backend
        )
    if write_docx is not None:
        config.analysis.write_docx = write_docx
    if track:
        config.analysis.track_with_mlflow = True
    return config


def run_pipeline(
    input_file: Optional[str] = None,
    run_type: str = "sample",
    output_dir: str = "data/outputs",
    config: Optional[ComplaintSurvivalConfig] = None,
    synthetic_n: Optional[int] = None,
    predict_only: bool = False,
    log_level: int = logging.INFO,
) -> int:
    """Run the analysis or the prediction step.

    Args:
        input_file: Complaint file (CSV, Parquet, pickle or URL)
        run_type: "sample" or "production"; names the output subdirectory
        output_dir: Root directory for outputs
        config: Run configuration (run-type defaults if None)
        synthetic_n: Generate this many synthetic complaints instead of
            reading input_file
        predict_only: Score input_file with the latest saved final model

    Returns:
        Exit code (0 for success, 1 for failure)

    Example:
        >>> run_pipeline(synthetic_n=2000, output_dir="/tmp/outputs")
        0
    """
    config = config or ComplaintSurvivalConfig.for_run_type(run_type)
    paths = get_output_paths(run_type, base_dir=output_dir)
    logger = setup_logging(paths["logs"], run_type=run_type, log_level=log_level)

    if input_file is None and synthetic_n is None:
        logger.error("Either an input file or --synthetic is required")
        return 1
    if input_file is not None and not input_file.startswith(("http://", "https://")) \
            and not os.path.exists(input_file):
        logger.error(f"Input file not found: {input_file}")
        return 1

    logger.info("=" * 70)
    logger.info(f"COMPLAINT SURVIVAL ANALYSIS - {run_type.upper()} RUN")
    logger.info(f"Input:     {input_file or f'synthetic ({synthetic_n} complaints)'}")
    logger.info(f"Mode:      {'Predict only' if predict_only else 'Analysis'}")
    logger.info(f"Execution: {config.execution}")
    logger.info("=" * 70)

    if predict_only:
        if input_file is None:
            logger.error("--predict-only needs --input")
            return 1
        pred_path = generate_predictions(
            input_file,
            models_dir=paths["models"],
            predictions_dir=paths["predictions"],
            run_type=run_type,
        )
        logger.info(f"Predictions complete: {pred_path}")
        return 0

    if synthetic_n is not None:
        df = generate_synthetic_complaints(n=synthetic_n, seed=config.analysis.seed)
    else:
        df = load_data(input_file, run_type=run_type)

    result = run_analysis(df, config=config, paths=paths, logger=logging.getLogger("complaint_survival.train"))
    logger.info(f"Selected family: {result.winner}")
    logger.info(f"Report: {result.files.get('markdown')}")
    logger.info(f"[{run_type.upper()}] RUN COMPLETED SUCCESSFULLY")
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Time-to-resolution analysis of building complaints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sample run on a synthetic snapshot
  complaint-survival --synthetic 2000

  # Production run on the complaint extract, all cores
  complaint-survival --input data/inputs/building_complaints.csv --run-type production --n-jobs -1

  # Score open complaints with the latest final model
  complaint-survival --input data/inputs/open_complaints.csv --predict-only
        """,
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--input", type=str, default=None,
                        help="Complaint file (CSV, Parquet or pickle) or URL")
    source.add_argument("--synthetic", type=int, default=None, metavar="N",
                        help="Generate N synthetic complaints instead of reading a file")
    parser.add_argument("--run-type", type=str, choices=["sample", "production"], default="sample",
                        help="Run type: 'sample' for development, 'production' for full data. Default: sample")
    parser.add_argument("--output-dir", type=str, default="data/outputs",
                        help="Root output directory. Default: data/outputs")
    parser.add_argument("--config", type=str, default=None,
                        help="JSON configuration saved by a previous run")
    parser.add_argument("--n-jobs", type=int, default=None,
                        help="Parallel jobs for candidate tuning. -1 means use all cores")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Console and file log level. Default: INFO")
    parser.add_argument("--no-docx", action="store_true", help="Skip the Word report")
    parser.add_argument("--track", action="store_true", help="Log the run to MLflow")
    parser.add_argument("--predict-only", action="store_true",
                        help="Score --input with the latest saved final model")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main execution function with argument parsing."""
    args = parse_args(argv)
    config = build_config(
        run_type=args.run_type,
        config_path=args.config,
        n_jobs=args.n_jobs,
        write_docx=False if args.no_docx else None,
        track=args.track,
    )
    return run_pipeline(
        input_file=args.input,
        run_type=args.run_type,
        output_dir=args.output_dir,
        config=config,
        synthetic_n=args.synthetic,
        predict_only=args.predict_only,
        log_level=getattr(logging, args.log_level),
    )


if __name__ == "__main__":
    sys.exit(main())
