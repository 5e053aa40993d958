#!/usr/bin/env python3
"""
interpret_shap.py
------------------

Compute SHAP (SHapley Additive exPlanations) values for a trained model
and visualise which taxa drive its detections.  Besides per‑taxon
importance, taxa can be grouped into higher taxonomic ranks (e.g. genus
or family) with a YAML file mapping group names to feature lists,
supplied via ``--group-config``.  Group importance is the mean of the
mean |SHAP| values of its member taxa.

Outputs:

* ``shap_importance.csv`` – mean |SHAP value| per feature or group.
* ``shap_summary.png`` – bar chart of the top entries.

Usage::

    python -m microbiome_detection.interpret_shap --config configs/base.yaml [--model results/rf.joblib] [--max-samples 200] [--group-config groups.yaml]
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import yaml

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

try:
    import shap  # type: ignore
except ImportError:
    shap = None  # type: ignore

import joblib

from .prepare_data import load_config
from .task import load_task

TREE_MODULES = ("xgboost", "sklearn.ensemble", "imblearn.ensemble")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compute SHAP values for a trained model")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/base.yaml",
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Path to a saved model (defaults to best_model.joblib in the results directory)",
    )
    parser.add_argument(
        "--max-samples",
        type=int,
        default=200,
        help="Maximum number of samples to use for SHAP estimation",
    )
    parser.add_argument(
        "--group-config",
        type=str,
        default=None,
        help="YAML file mapping group names to feature names for grouped SHAP aggregation",
    )
    parser.add_argument("--top-n", type=int, default=20, help="Number of entries shown in the plot")
    return parser.parse_args()


def load_group_config(path: str) -> Dict[str, List[str]]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def is_tree_model(clf: Any) -> bool:
    module = clf.__class__.__module__
    return any(module.startswith(m) for m in TREE_MODULES) and hasattr(clf, "feature_importances_")


def positive_class_values(shap_values: Any) -> np.ndarray:
    """Reduce SHAP output to an (n_samples, n_features) array for the positive class."""
    if isinstance(shap_values, list):
        return np.asarray(shap_values[-1])
    values = np.asarray(getattr(shap_values, "values", shap_values))
    if values.ndim == 3:
        return values[:, :, -1]
    return values


def compute_shap_values(model: Any, X: pd.DataFrame, seed: int = 42, background_size: int = 50) -> np.ndarray:
    """SHAP values of the positive class for every row of ``X``.

    Tree ensembles are explained on the scaled features with
    ``TreeExplainer``; other pipelines are explained end to end with
    ``KernelExplainer`` on the positive‑class probability.
    """
    if shap is None:
        raise ImportError("The 'shap' package is required; install it with 'pip install shap'")
    clf = model.named_steps["classifier"] if hasattr(model, "named_steps") else model
    if is_tree_model(clf):
        X_in = model[:-1].transform(X) if hasattr(model, "named_steps") else X
        explainer = shap.TreeExplainer(clf)
        return positive_class_values(explainer.shap_values(X_in))
    background = shap.sample(X, min(background_size, len(X)), random_state=seed)

    def predict_positive(data):
        frame = pd.DataFrame(data, columns=X.columns)
        return model.predict_proba(frame)[:, 1]

    explainer = shap.KernelExplainer(predict_positive, background)
    return positive_class_values(explainer.shap_values(X, silent=True))


def shap_importance(
    shap_values: np.ndarray,
    feature_names: List[str],
    groups: Optional[Dict[str, List[str]]] = None,
) -> pd.Series:
    """Mean |SHAP| per feature, or per group when ``groups`` is given."""
    mean_abs = pd.Series(np.abs(shap_values).mean(axis=0), index=feature_names, name="mean_abs_shap")
    if groups:
        group_scores: Dict[str, float] = {}
        for group_name, feats in groups.items():
            members = [f for f in feats if f in mean_abs.index]
            if not members:
                continue
            group_scores[group_name] = float(mean_abs[members].mean())
        mean_abs = pd.Series(group_scores, name="mean_abs_shap")
    mean_abs.index.name = "group" if groups else "feature"
    return mean_abs.sort_values(ascending=False)


def plot_shap_importance(scores: pd.Series, path: Path, title: str, top_n: int = 20) -> Path:
    top = scores.head(top_n)
    plt.figure(figsize=(max(6, len(top) * 0.3), 4))
    plt.bar(range(len(top)), top.values, color="mediumorchid")
    plt.xticks(range(len(top)), [str(i) for i in top.index], rotation=90, ha="right")
    plt.ylabel("Mean |SHAP value|")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(path)
    plt.close()
    return path


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    if shap is None:
        logging.error("The 'shap' package is not installed. Install it with 'pip install shap' to use this script.")
        return
    config = load_config(args.config)
    results_dir = Path(config["paths"]["results"])
    results_dir.mkdir(parents=True, exist_ok=True)
    seed = config.get("seed", 42)
    task = load_task(config)
    model_path = Path(args.model) if args.model else results_dir / "best_model.joblib"
    if not model_path.exists():
        raise FileNotFoundError(f"No trained model found at {model_path}; run train first")
    model = joblib.load(model_path)
    X = task.X
    # Sample to reduce computation
    if args.max_samples < len(X):
        rng = np.random.RandomState(seed)
        X = X.iloc[rng.choice(len(X), size=args.max_samples, replace=False)]
    values = compute_shap_values(model, X, seed=seed)
    groups = load_group_config(args.group_config) if args.group_config else None
    scores = shap_importance(values, task.feature_names, groups)
    out_csv = results_dir / "shap_importance.csv"
    scores.to_csv(out_csv)
    title = "Grouped SHAP Feature Importance" if groups else "SHAP Feature Importance"
    out_png = plot_shap_importance(scores, results_dir / "shap_summary.png", title, top_n=args.top_n)
    logging.info("SHAP importances saved to %s and %s", out_csv, out_png)


if __name__ == "__main__":  # pragma: no cover
    main()
