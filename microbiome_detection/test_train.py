import json
import math
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from microbiome_detection import train
from microbiome_detection.task import ClassificationTask


def _task(n: int = 60, p: int = 8, seed: int = 0) -> ClassificationTask:
    rng = np.random.RandomState(seed)
    y = np.array([0, 1] * (n // 2))
    X = pd.DataFrame(rng.normal(size=(n, p)), columns=[f"taxon{i}" for i in range(p)], index=[f"S{i}" for i in range(n)])
    X["taxon0"] += 1.5 * y
    X["taxon1"] -= 1.5 * y
    return ClassificationTask("synthetic", X, y)


def _config(tmp_path: Path, **overrides) -> dict:
    config = {
        "seed": 0,
        "paths": {"results": str(tmp_path / "results")},
        "models": ["baseline", "logreg", "rf"],
        "tuning": {
            "n_iter": 2,
            "inner_folds": 2,
            "search_spaces": {
                "rf": {"n_estimators": {"type": "int", "low": 20, "high": 40}},
                "logreg": {"C": {"type": "float", "low": 0.5, "high": 10.0, "log": True}},
            },
        },
        "evaluation": {"strategy": "nested_cv", "outer_folds": 3},
        "importance": {"n_repeats": 2, "top_n": 5},
    }
    config.update(overrides)
    return config


def test_outer_splits_nested_cv_with_repeats(tmp_path: Path) -> None:
    task = _task()
    config = _config(tmp_path, evaluation={"outer_folds": 3, "repeats": 2})
    splits = train.outer_splits(task, config, seed=0)
    assert len(splits) == 6
    assert [(r, f) for r, f, _, _ in splits][:4] == [(0, 0), (0, 1), (0, 2), (1, 0)]
    for _, _, train_idx, test_idx in splits:
        assert not set(train_idx) & set(test_idx)
    # Every sample is tested exactly once per repeat
    first_repeat = np.concatenate([test for r, _, _, test in splits if r == 0])
    assert sorted(first_repeat) == list(range(task.n_samples))


def test_outer_splits_holdout(tmp_path: Path) -> None:
    task = _task()
    splits = train.outer_splits(task, _config(tmp_path, evaluation={"strategy": "holdout", "test_size": 0.25}), seed=0)
    assert len(splits) == 1
    _, _, train_idx, test_idx = splits[0]
    assert len(test_idx) == 15
    assert task.y[test_idx].sum() in {7, 8}


def test_outer_splits_unknown_strategy(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="strategy"):
        train.outer_splits(_task(), _config(tmp_path, evaluation={"strategy": "bootstrap"}), seed=0)


def test_check_inner_folds_rejects_tiny_tasks(tmp_path: Path) -> None:
    task = _task(n=8)
    config = _config(tmp_path, evaluation={"outer_folds": 2}, tuning={"inner_folds": 3})
    with pytest.raises(ValueError, match="inner folds"):
        train.check_inner_folds(task, config)


def test_evaluate_model_records_folds(tmp_path: Path) -> None:
    task = _task()
    result = train.evaluate_model("logreg", task, _config(tmp_path), seed=0)
    assert len(result.fold_metrics) == 3
    assert len(result.best_params) == 3
    assert len(result.fold_importances) == 3
    oof = result.oof
    assert sorted(oof["sample"]) == sorted(task.X.index)
    assert result.mean_metrics()["auroc"] > 0.8
    assert result.final_model is not None
    assert set(result.final_params) == {"C", "l1_ratio"}
    imp = result.importance()
    assert set(imp.index[:2]) == {"taxon0", "taxon1"}
    assert "native_importance" in imp.columns


def test_run_comparison_skips_failing_models(tmp_path: Path) -> None:
    config = _config(tmp_path, models=["baseline", "not_a_model", "logreg"])
    results = train.run_comparison(_task(), config)
    assert list(results) == ["baseline", "logreg"]


def test_run_comparison_fail_fast(tmp_path: Path) -> None:
    config = _config(tmp_path, models=["not_a_model"], fail_fast=True)
    with pytest.raises(ValueError):
        train.run_comparison(_task(), config)


def test_run_comparison_all_models_fail(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        train.run_comparison(_task(), _config(tmp_path, models=["not_a_model"]))


def test_summarise_ranks_by_primary_metric(tmp_path: Path) -> None:
    results = train.run_comparison(_task(), _config(tmp_path, models=["baseline", "logreg"]))
    summary = train.summarise(results, "auroc")
    assert list(summary.index) == ["logreg", "baseline"]
    assert list(summary["rank"]) == [1, 2]
    assert summary.loc["baseline", "auroc_mean"] == pytest.approx(0.5)
    assert (summary["n_folds"] == 3).all()
    assert train.best_model_name(summary) == "logreg"
    with pytest.raises(ValueError):
        train.summarise(results, "r2")


def test_write_report_outputs(tmp_path: Path) -> None:
    task = _task()
    config = _config(tmp_path)
    results = train.run_comparison(task, config)
    written = train.write_report(results, task, config, Path(config["paths"]["results"]))
    for key in ("fold_scores", "summary", "best_params", "oof", "importance", "consensus", "metrics", "best_model"):
        assert written[key].exists(), key
    assert written["plot_performance"].name == "performance_auroc.png"
    assert written["plot_roc"].exists()
    assert written["plot_heatmap"].exists()
    assert (tmp_path / "results" / "rf.joblib").exists()

    metrics = json.loads(written["metrics"].read_text())
    assert metrics["task"]["class_counts"] == {"0": 30, "1": 30}
    assert set(metrics["models"]) == {"baseline", "logreg", "rf"}
    assert metrics["best_model"] in {"logreg", "rf"}
    assert set(metrics["top_features"][:2]) == {"taxon0", "taxon1"}

    consensus = pd.read_csv(written["consensus"], index_col="feature")
    assert "baseline" not in consensus.columns
    assert {"logreg", "rf", "mean_rank"} <= set(consensus.columns)
    scores = pd.read_csv(written["fold_scores"])
    assert len(scores) == 9
    oof = pd.read_csv(written["oof"])
    assert len(oof) == 3 * task.n_samples


def test_holdout_strategy_end_to_end(tmp_path: Path) -> None:
    task = _task()
    config = _config(tmp_path, models=["knn"], evaluation={"strategy": "holdout", "test_size": 0.3}, output={"save_models": False, "plots": False})
    results = train.run_comparison(task, config)
    result = results["knn"]
    assert len(result.fold_metrics) == 1
    assert result.final_model is None
    summary = train.summarise(results)
    assert math.isnan(summary.loc["knn", "auroc_std"])
