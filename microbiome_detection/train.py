#!/usr/bin/env python3
"""
train.py
--------

Train, tune and compare the configured classifiers on the processed
abundance table.  For every model in ``models`` the script

1. estimates generalisation performance by outer resampling
   (``evaluation.strategy``: ``nested_cv`` or ``holdout``), tuning the
   hyperparameters by cross‑validated random search inside every outer
   training set;
2. computes permutation importance of every taxon on the outer test
   sets;
3. tunes once more on the whole task and keeps the refitted model.

Afterwards the per‑model importances are aggregated into a consensus
ranking and the results are written to ``paths.results``:

* ``fold_scores.csv`` – metrics of every model on every outer fold;
* ``model_summary.csv`` – mean and standard deviation per model;
* ``best_params.csv`` / ``metrics.json`` – tuned parameters and metrics;
* ``oof_predictions.csv`` – out‑of‑fold scores for every sample;
* ``feature_importance.csv`` / ``importance_consensus.csv``;
* ``<model>.joblib`` and ``best_model.joblib``;
* ``performance_<metric>.png``, ``roc_curves.png``,
  ``importance_consensus.png``, ``importance_heatmap.png``.

Usage:
    python -m microbiome_detection.train --config configs/base.yaml
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import joblib
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.model_selection import RepeatedStratifiedKFold, train_test_split

from . import importance, plots
from .evaluate import LOWER_IS_BETTER, METRICS, metrics_from_predictions, positive_scores
from .models import canonical_name
from .prepare_data import load_config
from .task import ClassificationTask, load_task
from .tuning import best_params_table, tune_model

DEFAULT_MODELS = ["baseline", "logreg", "rf", "svm", "knn", "xgboost"]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tune and compare classifiers on processed microbiome data")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/base.yaml",
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--n_jobs",
        type=int,
        default=None,
        help="Number of outer folds to run in parallel (overrides n_jobs in the config)",
    )
    return parser.parse_args()


class ModelResult:
    """Everything recorded while evaluating one model."""

    def __init__(self, name: str):
        self.name = name
        self.fold_metrics: List[Dict[str, Any]] = []
        self.best_params: List[Dict[str, Any]] = []
        self.inner_scores: List[float] = []
        self.predictions: List[pd.DataFrame] = []
        self.fold_importances: List[pd.DataFrame] = []
        self.native_importances: List[pd.Series] = []
        self.final_model = None
        self.final_params: Dict[str, Any] = {}
        self.elapsed: float = 0.0

    @property
    def oof(self) -> pd.DataFrame:
        if not self.predictions:
            return pd.DataFrame(columns=["model", "sample", "repeat", "fold", "y_true", "score", "pred"])
        return pd.concat(self.predictions, ignore_index=True)

    def importance(self) -> pd.DataFrame:
        """Fold‑averaged permutation importance with the mean native importance joined in."""
        combined = importance.combine_folds(self.fold_importances)
        if self.native_importances and not combined.empty:
            native = pd.concat(self.native_importances, axis=1).mean(axis=1)
            combined["native_importance"] = native.reindex(combined.index)
        return combined

    def mean_metrics(self) -> Dict[str, float]:
        frame = pd.DataFrame(self.fold_metrics)
        return {m: float(frame[m].mean()) for m in METRICS if m in frame}


def outer_splits(task: ClassificationTask, config: Dict[str, Any], seed: int) -> List[Tuple[int, int, np.ndarray, np.ndarray]]:
    """Return ``(repeat, fold, train_idx, test_idx)`` for the outer resampling."""
    eval_cfg = config.get("evaluation", {}) or {}
    strategy = str(eval_cfg.get("strategy", "nested_cv")).lower()
    indices = np.arange(task.n_samples)
    if strategy == "holdout":
        test_size = float(eval_cfg.get("test_size", 0.25))
        train_idx, test_idx = train_test_split(indices, test_size=test_size, random_state=seed, stratify=task.y)
        return [(0, 0, train_idx, test_idx)]
    if strategy != "nested_cv":
        raise ValueError(f"Unknown evaluation strategy '{strategy}'; use 'nested_cv' or 'holdout'")
    n_folds = int(eval_cfg.get("outer_folds", 5))
    repeats = int(eval_cfg.get("repeats", 1))
    task.check_folds(n_folds)
    splitter = RepeatedStratifiedKFold(n_splits=n_folds, n_repeats=repeats, random_state=seed)
    return [
        (i // n_folds, i % n_folds, train_idx, test_idx)
        for i, (train_idx, test_idx) in enumerate(splitter.split(task.X, task.y))
    ]


def check_inner_folds(task: ClassificationTask, config: Dict[str, Any]) -> None:
    """Make sure every outer training set can be split into the inner folds."""
    eval_cfg = config.get("evaluation", {}) or {}
    n_inner = int((config.get("tuning", {}) or {}).get("inner_folds", 3))
    minority = min(task.class_counts.values())
    if str(eval_cfg.get("strategy", "nested_cv")).lower() == "holdout":
        left = minority - math.ceil(minority * float(eval_cfg.get("test_size", 0.25)))
    else:
        left = minority - math.ceil(minority / int(eval_cfg.get("outer_folds", 5)))
    if left < n_inner:
        raise ValueError(
            f"Outer training sets keep about {left} minority samples, fewer than the {n_inner} inner folds"
        )


def evaluate_fold(
    name: str,
    task: ClassificationTask,
    repeat: int,
    fold: int,
    train_idx: np.ndarray,
    test_idx: np.ndarray,
    config: Dict[str, Any],
    seed: int,
) -> Dict[str, Any]:
    """Tune on the outer training set and score on the outer test set."""
    X_train, X_test = task.X.iloc[train_idx], task.X.iloc[test_idx]
    y_train, y_test = task.y[train_idx], task.y[test_idx]
    tuned = tune_model(name, X_train, y_train, config, seed=seed)
    model = tuned.estimator
    preds = model.predict(X_test)
    scores = positive_scores(model, X_test)
    metrics = metrics_from_predictions(y_test, preds, scores)
    metrics.update({"model": name, "repeat": repeat, "fold": fold, "inner_score": tuned.best_score})
    predictions = pd.DataFrame(
        {
            "model": name,
            "sample": [str(s) for s in X_test.index],
            "repeat": repeat,
            "fold": fold,
            "y_true": y_test,
            "score": scores if scores is not None else np.nan,
            "pred": preds,
        }
    )
    imp_cfg = config.get("importance", {}) or {}
    fold_importance = None
    native = None
    if imp_cfg.get("enabled", True) and name != "baseline" and len(np.unique(y_test)) == 2:
        fold_importance = importance.permutation_scores(
            model,
            X_test,
            y_test,
            n_repeats=int(imp_cfg.get("n_repeats", 10)),
            scoring=imp_cfg.get("scoring", "roc_auc"),
            seed=seed + fold + 1000 * repeat,
        )
        native = importance.native_importance(model, task.feature_names)
    return {
        "metrics": metrics,
        "params": tuned.best_params,
        "inner_score": tuned.best_score,
        "predictions": predictions,
        "importance": fold_importance,
        "native": native,
    }


def evaluate_model(
    name: str,
    task: ClassificationTask,
    config: Dict[str, Any],
    seed: int = 42,
    n_jobs: int = 1,
) -> ModelResult:
    """Nested (or holdout) evaluation of one model plus its final refit."""
    name = canonical_name(name)
    result = ModelResult(name)
    start = time.perf_counter()
    splits = outer_splits(task, config, seed)
    fold_outputs = Parallel(n_jobs=n_jobs)(
        delayed(evaluate_fold)(name, task, repeat, fold, train_idx, test_idx, config, seed)
        for repeat, fold, train_idx, test_idx in splits
    )
    for out in fold_outputs:
        result.fold_metrics.append(out["metrics"])
        result.best_params.append(out["params"])
        result.inner_scores.append(out["inner_score"])
        result.predictions.append(out["predictions"])
        if out["importance"] is not None:
            result.fold_importances.append(out["importance"])
        if out["native"] is not None:
            result.native_importances.append(out["native"])
    if (config.get("output", {}) or {}).get("save_models", True):
        final = tune_model(name, task.X, task.y, config, seed=seed, n_jobs=n_jobs)
        result.final_model = final.estimator
        result.final_params = final.best_params
    result.elapsed = time.perf_counter() - start
    return result


def run_comparison(
    task: ClassificationTask,
    config: Dict[str, Any],
    n_jobs: Optional[int] = None,
) -> Dict[str, ModelResult]:
    """Evaluate every configured model on ``task``.

    A model that raises is logged and skipped unless ``fail_fast`` is
    set.  If no model succeeds a ``RuntimeError`` is raised.
    """
    seed = int(config.get("seed", 42))
    n_jobs = int(config.get("n_jobs", 1) if n_jobs is None else n_jobs)
    names = config.get("models") or DEFAULT_MODELS
    fail_fast = bool(config.get("fail_fast", False))
    check_inner_folds(task, config)
    logging.info("Comparing %d models on %r", len(names), task)
    results: Dict[str, ModelResult] = {}
    for raw_name in names:
        try:
            name = canonical_name(raw_name)
            if name in results:
                logging.warning("Model '%s' listed twice; skipping duplicate", raw_name)
                continue
            logging.info("Evaluating model '%s'", name)
            result = evaluate_model(name, task, config, seed=seed, n_jobs=n_jobs)
        except Exception as exc:
            if fail_fast:
                raise
            logging.error("Model '%s' failed: %s", raw_name, exc)
            continue
        means = result.mean_metrics()
        logging.info(
            "%s: auroc=%.3f auprc=%.3f balanced_accuracy=%.3f (%.1fs)",
            name,
            means.get("auroc", float("nan")),
            means.get("auprc", float("nan")),
            means.get("balanced_accuracy", float("nan")),
            result.elapsed,
        )
        results[name] = result
    if not results:
        raise RuntimeError("Every model failed; see the log for details")
    return results


def fold_scores_table(results: Dict[str, ModelResult]) -> pd.DataFrame:
    rows = [m for r in results.values() for m in r.fold_metrics]
    columns = ["model", "repeat", "fold", "inner_score", *METRICS]
    return pd.DataFrame(rows)[columns]


def summarise(results: Dict[str, ModelResult], primary_metric: str = "auroc") -> pd.DataFrame:
    """Mean and standard deviation of every metric per model, best model first."""
    if primary_metric not in METRICS:
        raise ValueError(f"Unknown metric '{primary_metric}'")
    scores = fold_scores_table(results)
    grouped = scores.groupby("model")[list(METRICS)]
    means = grouped.mean().add_suffix("_mean")
    stds = grouped.std(ddof=1).add_suffix("_std")
    summary = pd.concat([means, stds], axis=1)
    ordered = [c for m in METRICS for c in (f"{m}_mean", f"{m}_std")]
    summary = summary[ordered]
    summary.insert(0, "n_folds", scores.groupby("model").size())
    summary["elapsed_s"] = pd.Series({n: r.elapsed for n, r in results.items()})
    ascending = primary_metric in LOWER_IS_BETTER
    summary = summary.sort_values(f"{primary_metric}_mean", ascending=ascending, na_position="last")
    summary["rank"] = np.arange(1, len(summary) + 1)
    summary.index.name = "model"
    return summary


def best_model_name(summary: pd.DataFrame, exclude: Tuple[str, ...] = ("baseline",)) -> Optional[str]:
    candidates = [m for m in summary.index if m not in exclude]
    return candidates[0] if candidates else None


def _to_builtin(value: Any) -> Any:
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    return value


def write_report(
    results: Dict[str, ModelResult],
    task: ClassificationTask,
    config: Dict[str, Any],
    results_dir: Path,
) -> Dict[str, Path]:
    """Write tables, models and figures; return the written paths by name."""
    results_dir.mkdir(parents=True, exist_ok=True)
    eval_cfg = config.get("evaluation", {}) or {}
    imp_cfg = config.get("importance", {}) or {}
    primary = eval_cfg.get("primary_metric", "auroc")
    top_n = int(imp_cfg.get("top_n", 20))
    written: Dict[str, Path] = {}

    scores = fold_scores_table(results)
    written["fold_scores"] = results_dir / "fold_scores.csv"
    scores.to_csv(written["fold_scores"], index=False)
    summary = summarise(results, primary)
    written["summary"] = results_dir / "model_summary.csv"
    summary.to_csv(written["summary"])
    logging.info("Model ranking by %s:\n%s", primary, summary[[f"{primary}_mean", f"{primary}_std", "rank"]].to_string())

    params = best_params_table({n: r.best_params for n, r in results.items()})
    written["best_params"] = results_dir / "best_params.csv"
    params.to_csv(written["best_params"], index=False)

    oof = pd.concat([r.oof for r in results.values()], ignore_index=True)
    written["oof"] = results_dir / "oof_predictions.csv"
    oof.to_csv(written["oof"], index=False)

    per_model = {n: r.importance() for n, r in results.items()}
    written["importance"] = results_dir / "feature_importance.csv"
    importance.importance_long_table(per_model).to_csv(written["importance"], index=False)
    consensus = importance.aggregate_importance(per_model, exclude=("baseline",))
    written["consensus"] = results_dir / "importance_consensus.csv"
    consensus.to_csv(written["consensus"])

    best = best_model_name(summary)
    for name, result in results.items():
        if result.final_model is None:
            continue
        path = results_dir / f"{name}.joblib"
        joblib.dump(result.final_model, path)
        written[f"model_{name}"] = path
        if name == best:
            written["best_model"] = results_dir / "best_model.joblib"
            shutil.copyfile(path, written["best_model"])

    metrics = {
        "task": {
            "id": task.task_id,
            "n_samples": task.n_samples,
            "n_features": len(task.feature_names),
            "class_counts": task.class_counts,
        },
        "primary_metric": primary,
        "best_model": best,
        "top_features": importance.top_features(consensus, top_n),
        "models": {
            name: {
                "mean": result.mean_metrics(),
                "folds": [{k: _to_builtin(v) for k, v in m.items()} for m in result.fold_metrics],
                "best_params": [{k: _to_builtin(v) for k, v in p.items()} for p in result.best_params],
                "final_params": {k: _to_builtin(v) for k, v in result.final_params.items()},
                "elapsed_s": result.elapsed,
            }
            for name, result in results.items()
        },
    }
    written["metrics"] = results_dir / "metrics.json"
    with open(written["metrics"], "w", encoding="utf-8") as f:
        json.dump(metrics, f, indent=2, default=str)

    if (config.get("output", {}) or {}).get("plots", True):
        written["plot_performance"] = plots.plot_performance(scores, primary, results_dir / f"performance_{primary}.png")
        if oof["score"].notna().any():
            written["plot_roc"] = plots.plot_roc_curves(oof, results_dir / "roc_curves.png")
        if not consensus.empty:
            written["plot_consensus"] = plots.plot_importance(
                consensus, results_dir / "importance_consensus.png", top_n=top_n
            )
            written["plot_heatmap"] = plots.plot_importance_heatmap(
                consensus, results_dir / "importance_heatmap.png", top_n=top_n
            )
    return written


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    config = load_config(args.config)
    results_dir = Path(config["paths"]["results"])
    task = load_task(config)
    results = run_comparison(task, config, n_jobs=args.n_jobs)
    written = write_report(results, task, config, results_dir)
    logging.info("Training complete. Metrics saved to %s", written["metrics"])


if __name__ == "__main__":  # pragma: no cover
    main()
