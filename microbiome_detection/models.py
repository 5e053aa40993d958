"""
models.py
---------

Model construction and random‑search spaces.  Every learner in the
comparison is wrapped in a scikit‑learn ``Pipeline`` that standardises
the features before the classifier, so a tuned pipeline can be applied
to new samples directly.  Supported model names:

* ``baseline`` – featureless classifier predicting the class prior.
* ``logreg`` – elastic‑net logistic regression.
* ``rf`` – random forest.
* ``balanced_rf`` – balanced random forest from ``imbalanced‑learn``.
* ``svm`` – RBF support vector machine with Platt probabilities.
* ``knn`` – k‑nearest neighbours.
* ``xgboost`` – gradient boosted trees using XGBoost.

Search spaces are declared as plain dictionaries so they can be written
in YAML and translated either to scipy distributions (for
``RandomizedSearchCV``) or to Optuna suggestions.  A parameter spec
looks like::

    C: {type: float, low: 0.001, high: 100, log: true}
    max_depth: {type: categorical, choices: [null, 5, 10]}
    n_neighbors: {type: int, low: 1, high: 30}
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, Optional

import numpy as np
import sklearn
from scipy import stats
from sklearn.dummy import DummyClassifier
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.neighbors import KNeighborsClassifier
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVC

try:
    import xgboost as xgb  # type: ignore
except ImportError:  # pragma: no cover
    xgb = None  # type: ignore

try:
    from imblearn.ensemble import BalancedRandomForestClassifier  # type: ignore
except ImportError:  # pragma: no cover
    BalancedRandomForestClassifier = None  # type: ignore

PIPELINE_PREFIX = "classifier__"

_major, _minor = re.match(r"(\d+)\.(\d+)", sklearn.__version__).groups()
SKLEARN_VERSION = (int(_major), int(_minor))

# From scikit-learn 1.8 the penalty is implied by l1_ratio alone
LOGREG_PENALTY = {"penalty": "elasticnet"} if SKLEARN_VERSION < (1, 8) else {}

MODEL_ALIASES = {
    "baseline": "baseline",
    "featureless": "baseline",
    "dummy": "baseline",
    "logreg": "logreg",
    "logistic_regression": "logreg",
    "glmnet": "logreg",
    "rf": "rf",
    "random_forest": "rf",
    "ranger": "rf",
    "balanced_rf": "balanced_rf",
    "balanced_random_forest": "balanced_rf",
    "svm": "svm",
    "svc": "svm",
    "knn": "knn",
    "kknn": "knn",
    "xgboost": "xgboost",
    "xgb": "xgboost",
}

_TREE_SPACE: Dict[str, Dict[str, Any]] = {
    "n_estimators": {"type": "int", "low": 100, "high": 500},
    "max_depth": {"type": "categorical", "choices": [None, 3, 5, 10, 20]},
    "max_features": {"type": "categorical", "choices": ["sqrt", "log2", 0.2, 0.5]},
    "min_samples_leaf": {"type": "int", "low": 1, "high": 10},
}

DEFAULT_SEARCH_SPACES: Dict[str, Dict[str, Dict[str, Any]]] = {
    "baseline": {},
    "logreg": {
        "C": {"type": "float", "low": 1e-3, "high": 1e2, "log": True},
        "l1_ratio": {"type": "float", "low": 0.0, "high": 1.0},
    },
    "rf": _TREE_SPACE,
    "balanced_rf": _TREE_SPACE,
    "svm": {
        "C": {"type": "float", "low": 1e-2, "high": 1e3, "log": True},
        "gamma": {"type": "float", "low": 1e-5, "high": 1.0, "log": True},
    },
    "knn": {
        "n_neighbors": {"type": "int", "low": 1, "high": 30},
        "weights": {"type": "categorical", "choices": ["uniform", "distance"]},
        "p": {"type": "categorical", "choices": [1, 2]},
    },
    "xgboost": {
        "n_estimators": {"type": "int", "low": 50, "high": 500},
        "max_depth": {"type": "int", "low": 2, "high": 8},
        "learning_rate": {"type": "float", "low": 0.01, "high": 0.3, "log": True},
        "subsample": {"type": "float", "low": 0.5, "high": 1.0},
        "colsample_bytree": {"type": "float", "low": 0.3, "high": 1.0},
        "min_child_weight": {"type": "float", "low": 1.0, "high": 10.0, "log": True},
        "reg_lambda": {"type": "float", "low": 1e-3, "high": 10.0, "log": True},
    },
}


def canonical_name(name: str) -> str:
    """Map a model name or alias onto its canonical key."""
    key = (name or "").lower()
    if key not in MODEL_ALIASES:
        raise ValueError(f"Unknown model name '{name}'. Known models: {', '.join(sorted(set(MODEL_ALIASES.values())))}")
    return MODEL_ALIASES[key]


def class_weights(y: np.ndarray) -> Dict[int, float]:
    """Inverse class frequency weights, as used by ``class_weight='balanced'``."""
    unique, counts = np.unique(y, return_counts=True)
    total = counts.sum()
    return {int(cls): float(total) / (len(unique) * cnt) for cls, cnt in zip(unique, counts)}


def build_model(
    name: str,
    params: Optional[Dict[str, Any]] = None,
    use_class_weights: bool = False,
    y: Optional[np.ndarray] = None,
    seed: int = 42,
) -> Pipeline:
    """Instantiate a classifier pipeline according to its name.

    Parameters
    ----------
    name : str
        Model name or alias (see ``MODEL_ALIASES``).
    params : dict, optional
        Hyperparameters passed to the underlying estimator, without the
        pipeline prefix.
    use_class_weights : bool
        Whether to weight classes by inverse frequency computed from
        ``y``.  XGBoost receives the equivalent ``scale_pos_weight``;
        k‑nearest neighbours ignores the setting.
    y : numpy.ndarray, optional
        Training labels; required when ``use_class_weights`` is true.
    seed : int, default 42
        Random seed for stochastic estimators.

    Returns
    -------
    sklearn.pipeline.Pipeline
        ``scaler`` followed by ``classifier``.
    """
    key = canonical_name(name)
    params = dict(params or {})
    weights = None
    if use_class_weights:
        if y is None:
            raise ValueError("y is required to compute class weights")
        weights = class_weights(y)
    if key == "baseline":
        clf = DummyClassifier(strategy="prior", **params)
    elif key == "logreg":
        params.setdefault("l1_ratio", 0.5)
        clf = LogisticRegression(
            solver="saga",
            max_iter=5000,
            class_weight=weights,
            random_state=seed,
            **LOGREG_PENALTY,
            **params,
        )
    elif key == "rf":
        clf = RandomForestClassifier(random_state=seed, class_weight=weights, n_jobs=1, **params)
    elif key == "balanced_rf":
        if BalancedRandomForestClassifier is None:
            raise ImportError("imbalanced-learn is required for BalancedRandomForestClassifier")
        # Undersampling already balances every bootstrap, so class weights are not applied
        params.setdefault("sampling_strategy", "all")
        params.setdefault("replacement", True)
        params.setdefault("bootstrap", False)
        clf = BalancedRandomForestClassifier(random_state=seed, n_jobs=1, **params)
    elif key == "svm":
        clf = SVC(kernel="rbf", probability=True, class_weight=weights, random_state=seed, **params)
    elif key == "knn":
        clf = KNeighborsClassifier(**params)
    elif key == "xgboost":
        if xgb is None:
            raise ImportError("xgboost is required for the 'xgboost' model")
        if weights is not None:
            params.setdefault("scale_pos_weight", weights.get(1, 1.0) / weights.get(0, 1.0))
        clf = xgb.XGBClassifier(
            random_state=seed,
            eval_metric="logloss",
            n_jobs=1,
            **params,
        )
    else:  # pragma: no cover
        raise ValueError(f"Unknown model name '{name}'.")
    return Pipeline([
        ("scaler", StandardScaler()),
        ("classifier", clf),
    ])


def default_search_space(name: str) -> Dict[str, Dict[str, Any]]:
    """Return a copy of the default random‑search space for ``name``."""
    return copy.deepcopy(DEFAULT_SEARCH_SPACES[canonical_name(name)])


def resolve_search_space(name: str, config: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Merge ``tuning.search_spaces.<name>`` from the config over the defaults.

    A list in the config is shorthand for a categorical parameter.  A
    value of ``null`` removes the parameter from the search.
    """
    key = canonical_name(name)
    space = default_search_space(key)
    overrides = (config.get("tuning", {}) or {}).get("search_spaces", {}) or {}
    user_space = overrides.get(key, overrides.get(name, {})) or {}
    for param, spec in user_space.items():
        if spec is None:
            space.pop(param, None)
        elif isinstance(spec, list):
            space[param] = {"type": "categorical", "choices": spec}
        else:
            space[param] = dict(spec)
    for param, spec in space.items():
        validate_param_spec(param, spec)
    return space


def bound_search_space(name: str, space: Dict[str, Dict[str, Any]], n_train: int) -> Dict[str, Dict[str, Any]]:
    """Restrict parameters whose valid range depends on the training size."""
    if canonical_name(name) != "knn" or "n_neighbors" not in space:
        return space
    spec = dict(space["n_neighbors"])
    limit = max(1, n_train - 1)
    if spec.get("type") == "int" and spec["high"] > limit:
        spec["high"] = limit
        spec["low"] = min(spec["low"], limit)
        logging.debug("Capped knn n_neighbors at %d for %d training samples", limit, n_train)
    elif spec.get("type") == "categorical":
        choices = [c for c in spec["choices"] if c <= limit] or [limit]
        spec["choices"] = choices
    bounded = dict(space)
    bounded["n_neighbors"] = spec
    return bounded


def validate_param_spec(param: str, spec: Dict[str, Any]) -> None:
    """Raise ``ValueError`` for a malformed parameter spec."""
    kind = spec.get("type")
    if kind == "categorical":
        if not spec.get("choices"):
            raise ValueError(f"Categorical parameter '{param}' needs a non‑empty 'choices' list")
        return
    if kind not in {"float", "int"}:
        raise ValueError(f"Parameter '{param}' has unknown type '{kind}'")
    if "low" not in spec or "high" not in spec:
        raise ValueError(f"Parameter '{param}' needs 'low' and 'high' bounds")
    if spec["low"] > spec["high"]:
        raise ValueError(f"Parameter '{param}' has low > high")
    if spec.get("log"):
        if kind == "int":
            raise ValueError(f"Integer parameter '{param}' cannot use a log scale")
        if spec["low"] <= 0:
            raise ValueError(f"Log‑scaled parameter '{param}' needs a positive lower bound")


def to_scipy_distributions(space: Dict[str, Dict[str, Any]], prefix: str = PIPELINE_PREFIX) -> Dict[str, Any]:
    """Translate parameter specs into ``RandomizedSearchCV`` distributions."""
    distributions: Dict[str, Any] = {}
    for param, spec in space.items():
        validate_param_spec(param, spec)
        kind = spec["type"]
        if kind == "categorical":
            dist: Any = list(spec["choices"])
        elif kind == "int":
            if spec["low"] == spec["high"]:
                dist = [int(spec["low"])]
            else:
                dist = stats.randint(int(spec["low"]), int(spec["high"]) + 1)
        elif spec["low"] == spec["high"]:
            dist = [float(spec["low"])]
        elif spec.get("log"):
            dist = stats.loguniform(float(spec["low"]), float(spec["high"]))
        else:
            dist = stats.uniform(float(spec["low"]), float(spec["high"]) - float(spec["low"]))
        distributions[f"{prefix}{param}"] = dist
    return distributions


def space_size(space: Dict[str, Dict[str, Any]]) -> Optional[int]:
    """Number of distinct configurations, or None when the space is continuous."""
    size = 1
    for spec in space.values():
        if spec["type"] == "categorical":
            size *= len(spec["choices"])
        elif spec["type"] == "int":
            size *= int(spec["high"]) - int(spec["low"]) + 1
        elif spec["low"] != spec["high"]:
            return None
    return size


def prefix_params(params: Dict[str, Any], prefix: str = PIPELINE_PREFIX) -> Dict[str, Any]:
    return {f"{prefix}{k}": v for k, v in params.items()}


def unprefix_params(params: Dict[str, Any], prefix: str = PIPELINE_PREFIX) -> Dict[str, Any]:
    return {k[len(prefix):] if k.startswith(prefix) else k: v for k, v in params.items()}
