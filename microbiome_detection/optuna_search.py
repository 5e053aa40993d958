#!/usr/bin/env python3
"""
optuna_search.py
----------------

Hyperparameter search with Optuna.  Used as the ``optuna`` backend of
:func:`microbiome_detection.tuning.tune_model` and as a standalone
script for tuning a single model.  The default ``RandomSampler`` gives
plain random search; ``--sampler tpe`` switches to Bayesian
optimisation.  The objective is the mean cross‑validated score on the
training set (AUROC by default), which Optuna maximises.

Example usage::

    python -m microbiome_detection.optuna_search --config configs/base.yaml --model rf --n-trials 50
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import optuna  # type: ignore
from sklearn.model_selection import cross_val_score

from .models import bound_search_space, build_model, canonical_name, resolve_search_space
from .prepare_data import load_config
from .task import load_task
from .tuning import TuningResult, inner_cv


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Hyperparameter optimisation with Optuna")
    parser.add_argument("--config", type=str, default="configs/base.yaml", help="Path to YAML configuration file")
    parser.add_argument("--model", type=str, required=True, help="Name of the model to tune (e.g., rf, xgboost, svm)")
    parser.add_argument("--n-trials", type=int, default=25, help="Number of Optuna trials to run")
    parser.add_argument("--sampler", type=str, default="random", choices=["random", "tpe"], help="Optuna sampler")
    parser.add_argument("--study-name", type=str, default="optuna_study", help="Name of the Optuna study")
    return parser.parse_args()


def make_sampler(name: str, seed: int) -> optuna.samplers.BaseSampler:
    name = (name or "random").lower()
    if name == "random":
        return optuna.samplers.RandomSampler(seed=seed)
    if name == "tpe":
        return optuna.samplers.TPESampler(seed=seed)
    raise ValueError(f"Unknown Optuna sampler '{name}'")


def suggest_params(trial: optuna.Trial, space: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Sample a hyperparameter configuration from a parameter‑spec space."""
    params: Dict[str, Any] = {}
    for name, spec in space.items():
        kind = spec["type"]
        if kind == "categorical":
            params[name] = trial.suggest_categorical(name, list(spec["choices"]))
        elif kind == "int":
            params[name] = trial.suggest_int(name, int(spec["low"]), int(spec["high"]))
        else:
            params[name] = trial.suggest_float(
                name, float(spec["low"]), float(spec["high"]), log=bool(spec.get("log", False))
            )
    return params


def optuna_tune(
    name: str,
    X: pd.DataFrame,
    y: np.ndarray,
    config: Dict[str, Any],
    seed: int = 42,
    n_trials: int = 20,
    sampler: str = "random",
    space: Optional[Dict[str, Dict[str, Any]]] = None,
    study_name: Optional[str] = None,
) -> TuningResult:
    """Run an Optuna study for ``name`` and refit the best trial on all data."""
    key = canonical_name(name)
    tuning_cfg = config.get("tuning", {}) or {}
    use_class_weights = bool(config.get("use_class_weights", False))
    scoring = tuning_cfg.get("scoring", "roc_auc")
    if space is None:
        space = resolve_search_space(key, config)
    cv = inner_cv(config, seed)

    def objective(trial: optuna.Trial) -> float:
        params = suggest_params(trial, space)
        model = build_model(key, params, use_class_weights, y, seed)
        scores = cross_val_score(model, X, y, cv=cv, scoring=scoring, error_score=np.nan)
        score = float(np.nanmean(scores)) if not np.all(np.isnan(scores)) else float("nan")
        if np.isnan(score):
            # Optuna treats a NaN objective as a failed trial
            raise optuna.TrialPruned()
        return score

    optuna.logging.set_verbosity(optuna.logging.WARNING)
    study = optuna.create_study(
        direction="maximize",
        sampler=make_sampler(sampler, seed),
        study_name=study_name or f"{key}_search",
    )
    study.optimize(objective, n_trials=n_trials)
    completed = [t for t in study.trials if t.state == optuna.trial.TrialState.COMPLETE]
    if not completed:
        raise RuntimeError(f"All {n_trials} Optuna trials failed for model '{key}'")
    estimator = build_model(key, study.best_params, use_class_weights, y, seed)
    estimator.fit(X, y)
    return TuningResult(key, estimator, dict(study.best_params), float(study.best_value), len(study.trials))


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    config = load_config(args.config)
    seed = config.get("seed", 42)
    task = load_task(config)
    n_inner = int((config.get("tuning", {}) or {}).get("inner_folds", 3))
    task.check_folds(n_inner)
    n_train_inner = int(task.n_samples * (n_inner - 1) / n_inner)
    space = bound_search_space(args.model, resolve_search_space(args.model, config), n_train_inner)
    result = optuna_tune(
        args.model,
        task.X,
        task.y,
        config,
        seed=seed,
        n_trials=args.n_trials,
        sampler=args.sampler,
        space=space,
        study_name=args.study_name,
    )
    logging.info("Best parameters: %s", json.dumps(result.best_params, default=str))
    logging.info("Best objective: %.4f", result.best_score)


if __name__ == "__main__":  # pragma: no cover
    main()
