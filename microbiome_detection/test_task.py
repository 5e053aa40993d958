from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from microbiome_detection.task import build_task, load_task


def _processed() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "taxon_a": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6],
            "taxon_b": [1.0, 0.0, 1.0, 0.0, 1.0, 0.0],
            "study": ["x"] * 6,
            "condition": [0, 1, 0, 1, 0, 1],
        },
        index=[f"S{i}" for i in range(6)],
    )


def test_build_task_separates_numeric_features() -> None:
    task = build_task(_processed(), "condition", task_id="crc")
    assert task.feature_names == ["taxon_a", "taxon_b"]
    assert task.n_samples == 6
    assert task.class_counts == {0: 3, 1: 3}
    assert "crc" in repr(task)


def test_build_task_missing_target() -> None:
    with pytest.raises(KeyError):
        build_task(_processed(), "disease")


def test_build_task_requires_binary_target() -> None:
    df = _processed()
    df["condition"] = [0, 1, 2, 0, 1, 2]
    with pytest.raises(ValueError, match="binary"):
        build_task(df, "condition")
    df["condition"] = 1
    with pytest.raises(ValueError):
        build_task(df, "condition")


def test_check_folds() -> None:
    task = build_task(_processed(), "condition")
    task.check_folds(3)
    with pytest.raises(ValueError, match="minority"):
        task.check_folds(4)


def test_load_task_reads_processed_csv(tmp_path: Path) -> None:
    path = tmp_path / "processed.csv"
    _processed().drop(columns=["study"]).to_csv(path, index_label="sample_id")
    task = load_task({"paths": {"processed": str(path)}, "task": {"target": "condition", "name": "crc"}})
    assert task.task_id == "crc"
    assert list(task.X.index) == [f"S{i}" for i in range(6)]
    assert np.array_equal(task.y, [0, 1, 0, 1, 0, 1])


def test_load_task_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_task({"paths": {"processed": str(tmp_path / "nope.csv")}, "task": {"target": "condition"}})
