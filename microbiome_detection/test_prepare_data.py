import logging
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from microbiome_detection import prepare_data


def _write_raw(tmp_path: Path) -> tuple:
    """Write a taxa‑as‑rows abundance TSV and a metadata TSV."""
    rng = np.random.RandomState(0)
    samples = [f"S{i}" for i in range(10)]
    counts = pd.DataFrame(rng.poisson(200, size=(4, 10)), columns=samples)
    counts.insert(0, "taxon", ["g__Bacteroides", "g__Prevotella", "g__Roseburia", "g__Rare"])
    # g__Rare is observed in a single sample only
    counts.loc[3, samples] = 0
    counts.loc[3, "S0"] = 5
    abundance_path = tmp_path / "abundance.tsv"
    counts.to_csv(abundance_path, sep="\t", index=False)
    metadata = pd.DataFrame(
        {
            "sample_id": samples[1:] + ["S99"],
            "condition": ["detected", "healthy"] * 4 + ["detected", "healthy"],
        }
    )
    metadata_path = tmp_path / "metadata.tsv"
    metadata.to_csv(metadata_path, sep="\t", index=False)
    return abundance_path, metadata_path


def _config(tmp_path: Path) -> dict:
    return {
        "paths": {
            "abundance": str(tmp_path / "abundance.tsv"),
            "metadata": str(tmp_path / "metadata.tsv"),
            "processed": str(tmp_path / "processed.csv"),
        },
        "data": {"sample_id": "sample_id", "samples_as_rows": False},
        "task": {"target": "condition", "positive_class": "detected"},
        "preprocessing": {"min_prevalence": 0.2, "transform": "clr"},
    }


def test_load_abundance_transposes_taxa_rows(tmp_path: Path) -> None:
    abundance_path, _ = _write_raw(tmp_path)
    df = prepare_data.load_abundance(abundance_path, "sample_id", samples_as_rows=False)
    assert df.shape == (10, 4)
    assert df.index[0] == "S0"
    assert "g__Bacteroides" in df.columns


def test_build_processed_table(tmp_path: Path) -> None:
    abundance_path, metadata_path = _write_raw(tmp_path)
    config = _config(tmp_path)
    abundance = prepare_data.load_abundance(abundance_path, "sample_id", samples_as_rows=False)
    metadata = prepare_data.read_table(metadata_path, index_col="sample_id")
    processed = prepare_data.build_processed_table(abundance, metadata, config)
    # S0 has no metadata and S99 has no abundance profile
    assert len(processed) == 9
    assert "S0" not in processed.index
    # g__Rare only appears in S0 and is filtered out
    assert "g__Rare" not in processed.columns
    assert set(processed["condition"].unique()) == {0, 1}
    assert processed["condition"].sum() == 5
    taxa = processed.drop(columns=["condition"])
    assert np.allclose(taxa.sum(axis=1), 0.0)


def test_min_total_drops_shallow_samples(tmp_path: Path) -> None:
    abundance_path, metadata_path = _write_raw(tmp_path)
    config = _config(tmp_path)
    config["preprocessing"]["min_total"] = 10_000
    abundance = prepare_data.load_abundance(abundance_path, "sample_id", samples_as_rows=False)
    metadata = prepare_data.read_table(metadata_path, index_col="sample_id")
    with pytest.raises(ValueError):
        prepare_data.build_processed_table(abundance, metadata, config)


def test_encode_target_numeric_and_string() -> None:
    assert prepare_data.encode_target(pd.Series([1, 0, 1]), 1).tolist() == [1, 0, 1]
    encoded = prepare_data.encode_target(pd.Series(["CRC", "control", "adenoma"]), "CRC")
    assert encoded.tolist() == [1, 0, 0]


def test_encode_target_requires_two_classes() -> None:
    with pytest.raises(ValueError):
        prepare_data.encode_target(pd.Series(["healthy", "healthy"]), "detected")


def test_merge_samples_without_overlap() -> None:
    abundance = pd.DataFrame({"t1": [1, 2]}, index=["a", "b"])
    metadata = pd.DataFrame({"condition": [1, 0]}, index=["c", "d"])
    with pytest.raises(ValueError, match="No samples"):
        prepare_data.merge_samples(abundance, metadata, "condition")


def test_missing_target_column() -> None:
    abundance = pd.DataFrame({"t1": [1, 2]}, index=["a", "b"])
    metadata = pd.DataFrame({"disease": [1, 0]}, index=["a", "b"])
    with pytest.raises(KeyError):
        prepare_data.merge_samples(abundance, metadata, "condition")


def test_read_table_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        prepare_data.read_table(tmp_path / "absent.csv")


def test_load_abundance_drops_taxonomy_annotation(tmp_path: Path) -> None:
    samples = [f"S{i}" for i in range(6)]
    table = pd.DataFrame(np.arange(18).reshape(3, 6) + 1, columns=samples)
    table.insert(0, "#OTU ID", ["otu1", "otu2", "otu3"])
    table["taxonomy"] = [
        "k__Bacteria; p__Bacteroidetes",
        "k__Bacteria; p__Firmicutes",
        "k__Bacteria; p__Proteobacteria",
    ]
    path = tmp_path / "otu_table.tsv"
    table.to_csv(path, sep="\t", index=False)
    df = prepare_data.load_abundance(path, "sample_id", samples_as_rows=False)
    assert df.shape == (6, 3)
    assert list(df.columns) == ["otu1", "otu2", "otu3"]
    assert "taxonomy" not in df.index
    assert df.loc["S1", "otu2"] == 8
    assert all(np.issubdtype(dtype, np.number) for dtype in df.dtypes)


def test_merge_samples_counts_each_dropped_sample_once(caplog: pytest.LogCaptureFixture) -> None:
    abundance = pd.DataFrame({"t1": [1, 2, 3]}, index=["a", "b", "c"])
    metadata = pd.DataFrame({"condition": [1, 0, np.nan]}, index=["a", "b", "c"])
    caplog.set_level(logging.INFO)
    features, outcome = prepare_data.merge_samples(abundance, metadata, "condition")
    assert list(features.index) == ["a", "b"]
    assert list(outcome.index) == ["a", "b"]
    assert "Dropped 1 samples with a missing outcome" in caplog.text
    assert "present in only one" not in caplog.text
