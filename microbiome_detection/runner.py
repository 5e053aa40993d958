"""Pipeline runner script.

This module chains data preparation, model comparison and, optionally,
SHAP interpretation of the best model.  Each stage reads the same YAML
configuration.  A failing stage is logged and the process exits with
status 1 so that batch schedulers notice.

Usage::

    python -m microbiome_detection.runner --config configs/base.yaml [--skip-prepare] [--shap]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the full microbiome detection pipeline")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/base.yaml",
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--skip-prepare",
        action="store_true",
        help="Reuse the existing processed table instead of rebuilding it",
    )
    parser.add_argument(
        "--shap",
        action="store_true",
        help="Explain the best model with SHAP after training",
    )
    return parser.parse_args(argv)


def run_stage(name: str, func: Callable[[], None], config_path: Path) -> None:
    """Run a stage's ``main`` with ``--config`` on the command line; exit 1 on failure."""
    saved_argv = sys.argv
    sys.argv = [name, "--config", str(config_path)]
    try:
        func()
    except Exception as exc:
        logging.error("%s failed: %s", name, exc)
        sys.exit(1)
    finally:
        sys.argv = saved_argv


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    # Adjust logging to include time and level
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    config_path = Path(args.config)
    if not config_path.exists():
        logging.error("Configuration file %s does not exist", config_path)
        sys.exit(1)
    from . import interpret_shap, prepare_data, train

    # Stage 1: prepare data
    if not args.skip_prepare:
        run_stage("Data preparation", prepare_data.main, config_path)
    # Stage 2: tune and compare models
    run_stage("Model comparison", train.main, config_path)
    # Stage 3: explain the best model
    if args.shap:
        run_stage("SHAP interpretation", interpret_shap.main, config_path)
    logging.info("Pipeline finished successfully")


if __name__ == "__main__":  # pragma: no cover
    main()
