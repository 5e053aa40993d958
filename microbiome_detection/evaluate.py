"""Binary classification metrics and model evaluation script.

``compute_metrics`` is shared by the comparison loop and by the script
below, which loads a previously trained model and evaluates it on a
processed dataset, for example a validation cohort prepared with the
same configuration.

Usage::

    python -m microbiome_detection.evaluate --config configs/base.yaml --data data/processed/validation.csv --model results/rf.joblib
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import joblib
import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score,
    average_precision_score,
    balanced_accuracy_score,
    brier_score_loss,
    confusion_matrix,
    f1_score,
    matthews_corrcoef,
    roc_auc_score,
)

METRICS = (
    "auroc",
    "auprc",
    "accuracy",
    "balanced_accuracy",
    "f1",
    "sensitivity",
    "specificity",
    "mcc",
    "brier",
)

# Metrics where lower is better; everything else is maximised
LOWER_IS_BETTER = {"brier"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate a trained model on a processed dataset")
    parser.add_argument("--config", type=str, default="configs/base.yaml", help="Path to YAML configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to processed CSV to evaluate")
    parser.add_argument("--model", type=str, default=None, help="Path to trained model joblib file")
    return parser.parse_args()


def positive_scores(model: Any, X: pd.DataFrame) -> Optional[np.ndarray]:
    """Return scores for the positive class, or None when the model has none."""
    if hasattr(model, "predict_proba"):
        probs = model.predict_proba(X)
        return probs[:, 1] if probs.ndim == 2 else probs
    if hasattr(model, "decision_function"):
        # Squash margins into pseudo‑probabilities
        return 1 / (1 + np.exp(-model.decision_function(X)))
    return None


def metrics_from_predictions(y: np.ndarray, preds: np.ndarray, scores: Optional[np.ndarray]) -> Dict[str, float]:
    """Compute every metric in :data:`METRICS`; undefined ones are NaN."""
    y = np.asarray(y).astype(int)
    preds = np.asarray(preds).astype(int)
    metrics: Dict[str, float] = {name: float("nan") for name in METRICS}
    metrics["accuracy"] = float(accuracy_score(y, preds))
    tn, fp, fn, tp = confusion_matrix(y, preds, labels=[0, 1]).ravel()
    if tp + fn:
        metrics["sensitivity"] = float(tp / (tp + fn))
    if tn + fp:
        metrics["specificity"] = float(tn / (tn + fp))
    metrics["f1"] = float(f1_score(y, preds, zero_division=0))
    if len(np.unique(y)) == 2:
        metrics["balanced_accuracy"] = float(balanced_accuracy_score(y, preds))
        metrics["mcc"] = float(matthews_corrcoef(y, preds))
        if scores is not None:
            metrics["auroc"] = float(roc_auc_score(y, scores))
            metrics["auprc"] = float(average_precision_score(y, scores))
    if scores is not None:
        metrics["brier"] = float(brier_score_loss(y, np.clip(scores, 0.0, 1.0), pos_label=1))
    return metrics


def compute_metrics(model: Any, X: pd.DataFrame, y: np.ndarray) -> Dict[str, float]:
    """Compute evaluation metrics for a fitted binary classifier."""
    return metrics_from_predictions(y, model.predict(X), positive_scores(model, X))


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    from .prepare_data import load_config
    from .task import build_task

    config = load_config(args.config)
    results_dir = Path(config["paths"]["results"])
    model_path = Path(args.model) if args.model else results_dir / "best_model.joblib"
    if not model_path.exists():
        raise FileNotFoundError(f"No trained model at {model_path}; run train first")
    model = joblib.load(model_path)
    sample_id = (config.get("data", {}) or {}).get("sample_id", "sample_id")
    df = pd.read_csv(args.data)
    if sample_id in df.columns:
        df = df.set_index(sample_id)
    task = build_task(df, config["task"]["target"])
    # Align columns with the training features; taxa unseen in the new data are zero
    expected = getattr(model, "feature_names_in_", None)
    X = task.X
    if expected is not None:
        missing = [c for c in expected if c not in X.columns]
        if missing:
            logging.warning("%d training features missing from %s; filling with 0", len(missing), args.data)
        X = X.reindex(columns=list(expected), fill_value=0.0)
    metrics = compute_metrics(model, X, task.y)
    results_dir.mkdir(parents=True, exist_ok=True)
    out_path = results_dir / "evaluation.json"
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump({"model": str(model_path), "data": args.data, "metrics": metrics}, f, indent=2)
    logging.info("Evaluation complete. Metrics saved to %s", out_path)


if __name__ == "__main__":  # pragma: no cover
    main()
