"""Classification task construction.

A task bundles the feature matrix, the binary outcome and a few
bookkeeping fields so that every model in a comparison sees exactly
the same data.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pandas as pd


class ClassificationTask:
    """Binary detection task built from a processed abundance table."""

    def __init__(self, task_id: str, X: pd.DataFrame, y: np.ndarray, positive_class: Any = 1):
        if len(X) != len(y):
            raise ValueError(f"Feature matrix has {len(X)} rows but target has {len(y)} values")
        self.task_id = task_id
        self.X = X
        self.y = np.asarray(y).astype(int)
        self.positive_class = positive_class

    @property
    def feature_names(self) -> List[str]:
        return [str(c) for c in self.X.columns]

    @property
    def n_samples(self) -> int:
        return int(self.X.shape[0])

    @property
    def class_counts(self) -> Dict[int, int]:
        classes, counts = np.unique(self.y, return_counts=True)
        return {int(c): int(n) for c, n in zip(classes, counts)}

    def check_folds(self, n_folds: int) -> None:
        """Raise ``ValueError`` when the minority class cannot fill ``n_folds`` folds."""
        minority = min(self.class_counts.values())
        if minority < n_folds:
            raise ValueError(
                f"Task '{self.task_id}' has only {minority} samples in its minority class; "
                f"cannot build {n_folds} stratified folds"
            )

    def __repr__(self) -> str:
        return (
            f"ClassificationTask(id={self.task_id!r}, samples={self.n_samples}, "
            f"features={self.X.shape[1]}, classes={self.class_counts})"
        )


def build_task(df: pd.DataFrame, target: str, task_id: str = "detection", positive_class: Any = 1) -> ClassificationTask:
    """Split a processed table into features and a 0/1 target.

    Only numeric columns are used as features.
    """
    if target not in df.columns:
        raise KeyError(f"Target column '{target}' not found in processed data.")
    y = df[target].values
    classes = np.unique(y)
    if len(classes) != 2:
        raise ValueError(f"Expected a binary target, found classes {classes.tolist()}")
    if set(classes.tolist()) != {0, 1}:
        raise ValueError(f"Target must be encoded as 0/1, found {classes.tolist()}")
    X = df.drop(columns=[target]).select_dtypes(include=[np.number])
    if X.shape[1] == 0:
        raise ValueError("Processed data has no numeric feature columns")
    return ClassificationTask(task_id, X, y, positive_class=positive_class)


def load_task(config: Dict[str, Any]) -> ClassificationTask:
    """Read ``paths.processed`` and build the task described by ``config['task']``."""
    data_path = Path(config["paths"]["processed"])
    if not data_path.exists():
        raise FileNotFoundError(f"Processed data not found at {data_path}; run prepare_data first")
    sample_id = (config.get("data", {}) or {}).get("sample_id", "sample_id")
    df = pd.read_csv(data_path)
    if sample_id in df.columns:
        df[sample_id] = df[sample_id].astype(str)
        df = df.set_index(sample_id)
    task_cfg = config["task"]
    return build_task(
        df,
        task_cfg["target"],
        task_id=task_cfg.get("name", "detection"),
        positive_class=task_cfg.get("positive_class", 1),
    )
