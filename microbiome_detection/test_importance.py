import numpy as np
import pandas as pd
import pytest

from microbiome_detection import importance
from microbiome_detection.models import build_model


def _frame(values: dict) -> pd.DataFrame:
    frame = pd.DataFrame({"importance_mean": pd.Series(values), "importance_std": 0.0})
    frame.index.name = "feature"
    return frame


def test_permutation_scores_rank_informative_feature_first() -> None:
    rng = np.random.RandomState(0)
    y = np.array([0, 1] * 40)
    X = pd.DataFrame(rng.normal(size=(80, 4)), columns=["signal", "noise1", "noise2", "noise3"])
    X["signal"] += 3.0 * y
    model = build_model("logreg", {"C": 1.0}, y=y).fit(X, y)
    scores = importance.permutation_scores(model, X, y, n_repeats=5, seed=0)
    assert list(scores.columns) == ["importance_mean", "importance_std"]
    assert scores["importance_mean"].idxmax() == "signal"


def test_native_importance_for_linear_and_tree_models() -> None:
    rng = np.random.RandomState(1)
    y = np.array([0, 1] * 15)
    X = pd.DataFrame(rng.normal(size=(30, 3)), columns=["a", "b", "c"])
    for name in ("logreg", "rf"):
        model = build_model(name, {}, y=y).fit(X, y)
        native = importance.native_importance(model, list(X.columns))
        assert native is not None
        assert list(native.index) == ["a", "b", "c"]
        assert (native >= 0).all()
    knn = build_model("knn", {}, y=y).fit(X, y)
    assert importance.native_importance(knn, list(X.columns)) is None


def test_combine_folds_averages() -> None:
    combined = importance.combine_folds([_frame({"a": 0.2, "b": 0.0}), _frame({"a": 0.4, "b": 0.1})])
    assert combined.loc["a", "importance_mean"] == pytest.approx(0.3)
    assert combined.loc["b", "importance_std"] == pytest.approx(0.05)
    assert combined.index[0] == "a"
    assert (combined["n_folds"] == 2).all()


def test_combine_folds_empty() -> None:
    assert importance.combine_folds([]).empty


def test_normalise_importance() -> None:
    norm = importance.normalise_importance(pd.Series({"a": 0.3, "b": -0.1, "c": 0.1}))
    assert norm.tolist() == pytest.approx([0.75, 0.0, 0.25])
    uniform = importance.normalise_importance(pd.Series({"a": -0.2, "b": 0.0}))
    assert uniform.tolist() == pytest.approx([0.5, 0.5])


def test_aggregate_importance_mean_rank() -> None:
    per_model = {
        "rf": _frame({"a": 0.5, "b": 0.3, "c": 0.2}),
        "logreg": _frame({"a": 0.1, "b": 0.6, "c": 0.3}),
        "baseline": _frame({"a": 0.0, "b": 0.0, "c": 1.0}),
    }
    consensus = importance.aggregate_importance(per_model, exclude=["baseline"])
    assert "baseline" not in consensus.columns
    assert consensus.loc["b", "mean_rank"] == pytest.approx(1.5)
    assert consensus.loc["a", "mean_rank"] == pytest.approx(2.0)
    assert consensus.loc["c", "mean_rank"] == pytest.approx(2.5)
    assert importance.top_features(consensus, 2) == ["b", "a"]
    assert (consensus["n_models"] == 2).all()


def test_aggregate_importance_without_models() -> None:
    assert importance.aggregate_importance({"baseline": _frame({"a": 1.0})}).empty


def test_importance_long_table() -> None:
    long = importance.importance_long_table({"rf": _frame({"a": 0.5, "b": 0.1})})
    assert list(long.columns[:3]) == ["model", "feature", "importance_mean"]
    assert long["model"].unique().tolist() == ["rf"]
