"""Static figures for a model comparison run.

All functions write a PNG to ``path`` and return it.  The Agg backend
is selected so plots can be produced on headless machines.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from sklearn.metrics import roc_auc_score, roc_curve


def _save(fig, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path


def plot_performance(fold_scores: pd.DataFrame, metric: str, path: Path) -> Path:
    """Box plot of per‑fold ``metric`` for each model, best median first."""
    if metric not in fold_scores.columns:
        raise KeyError(f"Metric '{metric}' not found in fold scores")
    medians = fold_scores.groupby("model")[metric].median().sort_values(ascending=False)
    order = list(medians.index)
    data = [fold_scores.loc[fold_scores["model"] == m, metric].dropna().values for m in order]
    fig, ax = plt.subplots(figsize=(max(5, len(order) * 1.1), 4))
    ax.boxplot(data, showmeans=True)
    for i, values in enumerate(data, start=1):
        jitter = np.random.RandomState(i).uniform(-0.08, 0.08, size=len(values))
        ax.scatter(np.full(len(values), i) + jitter, values, s=12, color="mediumorchid", alpha=0.7, zorder=3)
    ax.set_xticks(range(1, len(order) + 1))
    ax.set_xticklabels(order, rotation=30, ha="right")
    ax.set_ylabel(metric)
    ax.set_title(f"Outer‑fold {metric} by model")
    if metric in {"auroc", "balanced_accuracy"}:
        ax.axhline(0.5, color="grey", linestyle="--", linewidth=0.8)
    return _save(fig, path)


def plot_roc_curves(oof: pd.DataFrame, path: Path) -> Path:
    """Overlay out‑of‑fold ROC curves of every model.

    ``oof`` needs the columns ``model``, ``y_true`` and ``score``.
    Models whose predictions cover a single class are skipped.
    """
    fig, ax = plt.subplots(figsize=(5, 5))
    for name, part in oof.groupby("model", sort=False):
        part = part.dropna(subset=["score"])
        if part["y_true"].nunique() < 2:
            continue
        fpr, tpr, _ = roc_curve(part["y_true"], part["score"])
        auc = roc_auc_score(part["y_true"], part["score"])
        ax.plot(fpr, tpr, linewidth=1.4, label=f"{name} (AUC={auc:.3f})")
    ax.plot([0, 1], [0, 1], color="grey", linestyle="--", linewidth=0.8)
    ax.set_xlabel("False positive rate")
    ax.set_ylabel("True positive rate")
    ax.set_title("Out‑of‑fold ROC curves")
    ax.legend(loc="lower right", fontsize="small")
    return _save(fig, path)


def plot_importance(consensus: pd.DataFrame, path: Path, model: Optional[str] = None, top_n: int = 20) -> Path:
    """Horizontal bar chart of the top features for one model or the consensus."""
    column = model if model is not None else "mean_importance"
    if column not in consensus.columns:
        raise KeyError(f"Column '{column}' not found in importance table")
    top = consensus[column].sort_values(ascending=False).head(top_n)[::-1]
    fig, ax = plt.subplots(figsize=(6, max(3, len(top) * 0.3)))
    ax.barh(range(len(top)), top.values, color="mediumorchid")
    ax.set_yticks(range(len(top)))
    ax.set_yticklabels([str(i) for i in top.index], fontsize="small")
    ax.set_xlabel("Normalised permutation importance")
    ax.set_title(f"Top taxa: {model or 'consensus'}")
    return _save(fig, path)


def plot_importance_heatmap(consensus: pd.DataFrame, path: Path, top_n: int = 20) -> Path:
    """Heatmap of normalised importances of the consensus top features across models."""
    model_cols = [c for c in consensus.columns if c not in {"mean_importance", "mean_rank", "n_models"}]
    if not model_cols:
        raise ValueError("Importance table has no per‑model columns")
    top = consensus.head(top_n)[model_cols]
    fig, ax = plt.subplots(figsize=(max(4, len(model_cols) * 0.9 + 2), max(3, len(top) * 0.3)))
    im = ax.imshow(top.values, aspect="auto", cmap="viridis")
    ax.set_xticks(range(len(model_cols)))
    ax.set_xticklabels(model_cols, rotation=30, ha="right")
    ax.set_yticks(range(len(top)))
    ax.set_yticklabels([str(i) for i in top.index], fontsize="small")
    fig.colorbar(im, ax=ax, label="Normalised importance")
    ax.set_title("Feature importance across models")
    return _save(fig, path)
