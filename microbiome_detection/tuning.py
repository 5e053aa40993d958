"""Cross‑validated random search for a single model.

``tune_model`` is the only entry point used by the comparison loop.
It dispatches on ``tuning.backend``:

* ``sklearn`` – ``RandomizedSearchCV`` over scipy distributions.
* ``optuna`` – an Optuna study with a random (or TPE) sampler; see
  :mod:`microbiome_detection.optuna_search`.

Both backends score candidates with stratified inner folds and refit
the best configuration on all the data they were given.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
from sklearn.model_selection import RandomizedSearchCV, StratifiedKFold
from sklearn.pipeline import Pipeline

from .models import (
    bound_search_space,
    build_model,
    canonical_name,
    resolve_search_space,
    space_size,
    to_scipy_distributions,
    unprefix_params,
)


class TuningResult:
    """Outcome of tuning one model on one training set."""

    def __init__(
        self,
        model: str,
        estimator: Pipeline,
        best_params: Dict[str, Any],
        best_score: float,
        n_candidates: int,
    ):
        self.model = model
        self.estimator = estimator
        self.best_params = best_params
        self.best_score = best_score
        self.n_candidates = n_candidates

    def __repr__(self) -> str:
        return (
            f"TuningResult(model={self.model!r}, best_score={self.best_score:.4f}, "
            f"candidates={self.n_candidates}, params={self.best_params})"
        )


def inner_cv(config: Dict[str, Any], seed: int) -> StratifiedKFold:
    n_folds = int((config.get("tuning", {}) or {}).get("inner_folds", 3))
    return StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed)


def effective_n_iter(space: Dict[str, Dict[str, Any]], n_iter: int) -> int:
    """Cap the number of candidates at the size of a fully discrete space."""
    size = space_size(space)
    if size is not None and size < n_iter:
        return size
    return n_iter


def tune_model(
    name: str,
    X: pd.DataFrame,
    y: np.ndarray,
    config: Dict[str, Any],
    seed: int = 42,
    n_jobs: int = 1,
) -> TuningResult:
    """Tune ``name`` by cross‑validated random search and refit on ``X``/``y``.

    Models with an empty search space (the baseline) are fitted directly
    and report a NaN CV score.
    """
    key = canonical_name(name)
    tuning_cfg = config.get("tuning", {}) or {}
    use_class_weights = bool(config.get("use_class_weights", False))
    n_inner = int(tuning_cfg.get("inner_folds", 3))
    # Each inner training split holds roughly (k-1)/k of the rows
    n_train_inner = int(len(y) * (n_inner - 1) / n_inner)
    space = bound_search_space(key, resolve_search_space(key, config), n_train_inner)
    if not space:
        estimator = build_model(key, {}, use_class_weights, y, seed)
        estimator.fit(X, y)
        return TuningResult(key, estimator, {}, float("nan"), 0)

    backend = str(tuning_cfg.get("backend", "sklearn")).lower()
    n_iter = effective_n_iter(space, int(tuning_cfg.get("n_iter", 20)))
    if backend == "optuna":
        from .optuna_search import optuna_tune

        return optuna_tune(
            key,
            X,
            y,
            config,
            seed=seed,
            n_trials=n_iter,
            sampler=tuning_cfg.get("sampler", "random"),
            space=space,
        )
    if backend != "sklearn":
        raise ValueError(f"Unknown tuning backend '{backend}'; use 'sklearn' or 'optuna'")

    search = RandomizedSearchCV(
        build_model(key, {}, use_class_weights, y, seed),
        param_distributions=to_scipy_distributions(space),
        n_iter=n_iter,
        scoring=tuning_cfg.get("scoring", "roc_auc"),
        cv=inner_cv(config, seed),
        refit=True,
        random_state=seed,
        n_jobs=n_jobs,
        error_score=np.nan,
    )
    search.fit(X, y)
    best_params = unprefix_params(search.best_params_)
    result = TuningResult(key, search.best_estimator_, best_params, float(search.best_score_), n_iter)
    logging.debug("%s", result)
    return result


def best_params_table(results: Dict[str, Any], model: Optional[str] = None) -> pd.DataFrame:
    """Flatten ``{model: [fold params, ...]}`` into a long table."""
    rows = []
    for name, folds in results.items():
        if model is not None and name != model:
            continue
        for fold, params in enumerate(folds):
            for param, value in (params or {}).items():
                rows.append({"model": name, "fold": fold, "param": param, "value": value})
    return pd.DataFrame(rows, columns=["model", "fold", "param", "value"])
