"""Feature importance estimation and cross‑model aggregation.

Permutation importance is the common currency: it is model‑agnostic,
so scores from a forest and from an SVM can be compared once each
model's scores are normalised.  Native importances (impurity decrease,
absolute coefficients) are reported alongside where a model has them.

The consensus table ranks taxa by their mean rank across models, which
is robust to the very different scales of the per‑model scores.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from sklearn.inspection import permutation_importance


def permutation_scores(
    model,
    X: pd.DataFrame,
    y: np.ndarray,
    n_repeats: int = 10,
    scoring: str = "roc_auc",
    seed: int = 42,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Permutation importance of every column of ``X`` for a fitted model.

    Returns a DataFrame indexed by feature with ``importance_mean`` and
    ``importance_std`` (drop in ``scoring`` when the feature is
    shuffled).  Requires both classes in ``y`` for rank‑based scorers.
    """
    result = permutation_importance(
        model,
        X,
        y,
        n_repeats=n_repeats,
        scoring=scoring,
        random_state=seed,
        n_jobs=n_jobs,
    )
    return pd.DataFrame(
        {
            "importance_mean": result.importances_mean,
            "importance_std": result.importances_std,
        },
        index=pd.Index([str(c) for c in X.columns], name="feature"),
    )


def native_importance(model, feature_names: List[str]) -> Optional[pd.Series]:
    """Model‑specific importance of a fitted pipeline, or None if it has none.

    Tree ensembles report ``feature_importances_``; linear models report
    the absolute coefficients (comparable because features are
    standardised inside the pipeline).
    """
    clf = model.named_steps["classifier"] if hasattr(model, "named_steps") else model
    if hasattr(clf, "feature_importances_"):
        values = np.asarray(clf.feature_importances_, dtype=float)
    elif hasattr(clf, "coef_"):
        values = np.abs(np.asarray(clf.coef_, dtype=float)).ravel()
    else:
        return None
    if values.size != len(feature_names):
        logging.warning(
            "Native importance has %d values for %d features; ignoring it", values.size, len(feature_names)
        )
        return None
    return pd.Series(values, index=pd.Index(feature_names, name="feature"), name="native_importance")


def combine_folds(fold_frames: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Average per‑fold permutation importances for one model.

    The returned ``importance_std`` is the standard deviation of the
    fold means, i.e. the between‑fold variability.
    """
    frames = [f for f in fold_frames if f is not None and not f.empty]
    if not frames:
        return pd.DataFrame(columns=["importance_mean", "importance_std", "n_folds"])
    means = pd.concat([f["importance_mean"] for f in frames], axis=1).fillna(0.0)
    combined = pd.DataFrame(
        {
            "importance_mean": means.mean(axis=1),
            "importance_std": means.std(axis=1, ddof=0),
            "n_folds": len(frames),
        }
    )
    combined.index.name = "feature"
    return combined.sort_values("importance_mean", ascending=False)


def normalise_importance(values: pd.Series) -> pd.Series:
    """Clip negative scores to zero and scale to sum to one.

    A vector with no positive entry becomes uniform, so a model with
    no signal contributes no preference rather than failing.
    """
    clipped = values.astype(float).fillna(0.0).clip(lower=0.0)
    total = float(clipped.sum())
    if total <= 0:
        return pd.Series(1.0 / len(clipped), index=clipped.index) if len(clipped) else clipped
    return clipped / total


def aggregate_importance(
    per_model: Dict[str, pd.DataFrame],
    exclude: Iterable[str] = ("baseline",),
) -> pd.DataFrame:
    """Build the consensus importance table across models.

    Parameters
    ----------
    per_model : dict
        Mapping from model name to the output of :func:`combine_folds`.
    exclude : iterable of str
        Models left out of the consensus (the featureless baseline has
        no meaningful importances).

    Returns
    -------
    pandas.DataFrame
        One row per feature with a normalised importance column per
        model, ``mean_importance``, ``mean_rank`` (1 = most important)
        and ``n_models``; sorted by ``mean_rank``.
    """
    excluded = set(exclude)
    columns = {
        name: normalise_importance(frame["importance_mean"])
        for name, frame in per_model.items()
        if name not in excluded and frame is not None and not frame.empty
    }
    if not columns:
        logging.warning("No model importances available for aggregation")
        return pd.DataFrame(columns=["mean_importance", "mean_rank", "n_models"])
    table = pd.DataFrame(columns).fillna(0.0)
    ranks = table.rank(axis=0, ascending=False, method="average")
    table["mean_importance"] = table[list(columns)].mean(axis=1)
    table["mean_rank"] = ranks.mean(axis=1)
    table["n_models"] = len(columns)
    table.index.name = "feature"
    return table.sort_values(["mean_rank", "mean_importance"], ascending=[True, False])


def top_features(consensus: pd.DataFrame, n: int = 20) -> List[str]:
    """Names of the ``n`` best‑ranked features of a consensus table."""
    return [str(f) for f in consensus.head(n).index]


def importance_long_table(per_model: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Stack per‑model importance frames into one long table for CSV output."""
    parts = []
    for name, frame in per_model.items():
        if frame is None or frame.empty:
            continue
        part = frame.reset_index()
        part.insert(0, "model", name)
        parts.append(part)
    if not parts:
        return pd.DataFrame(columns=["model", "feature", "importance_mean", "importance_std"])
    return pd.concat(parts, ignore_index=True)
