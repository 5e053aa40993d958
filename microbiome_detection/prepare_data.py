#!/usr/bin/env python3
"""
prepare_data.py
----------------

Build the modelling table from a raw microbiome abundance table and a
sample metadata table.  The abundance file holds one row per sample
and one column per taxon (or the transpose, when
``data.samples_as_rows`` is false, which is the usual layout of
OTU/ASV exports).  The metadata file holds the sample identifier and
the outcome column named by ``task.target``.

Processing steps, in order:

1. read both tables (CSV or TSV, chosen by file suffix);
2. merge them on ``data.sample_id`` and drop unmatched samples;
3. drop samples with fewer than ``preprocessing.min_total`` reads;
4. encode the outcome as 0/1 using ``task.positive_class``;
5. drop taxa below ``preprocessing.min_prevalence``;
6. apply ``preprocessing.transform`` (``clr``, ``log``, ``relative``,
   ``zscore`` or ``none``).

The result is written to ``paths.processed`` with the sample identifier
as the first column.

Usage:
    python -m microbiome_detection.prepare_data --config configs/base.yaml
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Any, Dict, Tuple

import numpy as np
import pandas as pd
import yaml

from . import datasets


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Prepare microbiome abundance data for modelling")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/base.yaml",
        help="Path to the YAML configuration file",
    )
    return parser.parse_args()


def load_config(path: str | os.PathLike) -> dict:
    """Load a YAML configuration file."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def read_table(file_path: Path, index_col: str | None = None) -> pd.DataFrame:
    """Read a CSV or TSV file, choosing the separator from the suffix."""
    if not file_path.exists():
        raise FileNotFoundError(f"Input table {file_path} does not exist")
    sep = "," if file_path.suffix.lower() == ".csv" else "\t"
    df = pd.read_csv(file_path, sep=sep)
    if index_col is not None:
        if index_col not in df.columns:
            raise KeyError(f"Column '{index_col}' not found in {file_path}")
        df[index_col] = df[index_col].astype(str)
        df = df.set_index(index_col)
    return df


def load_abundance(file_path: Path, sample_id: str, samples_as_rows: bool = True) -> pd.DataFrame:
    """Load an abundance table as a sample × taxon DataFrame indexed by sample.

    When ``samples_as_rows`` is false the first column is taken as the
    taxon identifier and the table is transposed.  Text annotation
    columns of such exports (e.g. a ``taxonomy`` lineage) are dropped
    before the transpose.
    """
    if samples_as_rows:
        df = read_table(file_path, index_col=sample_id)
    else:
        raw = read_table(file_path)
        taxon_col = raw.columns[0]
        raw = raw.set_index(taxon_col)
        raw.index = raw.index.astype(str)
        annotations = raw.select_dtypes(exclude=[np.number]).columns
        if len(annotations):
            logging.warning("Dropping %d non‑numeric annotation columns: %s", len(annotations), list(annotations)[:5])
            raw = raw.drop(columns=annotations)
        df = raw.T
        df.index = df.index.astype(str)
        df.index.name = sample_id
    non_numeric = df.select_dtypes(exclude=[np.number]).columns
    if len(non_numeric):
        logging.warning("Dropping %d non‑numeric abundance columns: %s", len(non_numeric), list(non_numeric)[:5])
        df = df.drop(columns=non_numeric)
    return df


def encode_target(values: pd.Series, positive_class: Any) -> pd.Series:
    """Encode an outcome column as 1 for ``positive_class`` and 0 otherwise.

    Numeric outcomes are compared numerically; anything else is compared
    as strings so that ``yes`` in the YAML matches ``"yes"`` in a CSV.
    """
    if pd.api.types.is_numeric_dtype(values) and isinstance(positive_class, (int, float)):
        encoded = (values == positive_class).astype(int)
    else:
        encoded = (values.astype(str) == str(positive_class)).astype(int)
    if encoded.nunique() != 2:
        raise ValueError(
            f"Outcome must contain both the positive class '{positive_class}' and at least one other value"
        )
    return encoded


def merge_samples(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    target_col: str,
) -> Tuple[pd.DataFrame, pd.Series]:
    """Align abundance rows with the outcome column of the metadata."""
    if target_col not in metadata.columns:
        raise KeyError(f"Target column '{target_col}' not found in metadata")
    outcome = metadata[target_col].dropna()
    missing_outcome = len(metadata) - len(outcome)
    if missing_outcome:
        logging.info("Dropped %d samples with a missing outcome", missing_outcome)
    matched = abundance.index.intersection(metadata.index)
    unmatched = len(abundance.index.union(metadata.index)) - len(matched)
    if unmatched:
        logging.info("Dropped %d samples present in only one of abundance/metadata", unmatched)
    shared = matched.intersection(outcome.index)
    if len(shared) == 0:
        raise ValueError("No samples are shared between the abundance table and the metadata")
    return abundance.loc[shared], outcome.loc[shared]


def build_processed_table(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Dict[str, Any],
) -> pd.DataFrame:
    """Run merge, filtering, encoding and transformation on loaded tables."""
    target_col = config["task"]["target"]
    positive_class = config["task"].get("positive_class", 1)
    pre_cfg = config.get("preprocessing", {}) or {}

    features, outcome = merge_samples(abundance, metadata, target_col)
    min_total = float(pre_cfg.get("min_total", 0))
    if min_total > 0:
        depth = features.sum(axis=1)
        shallow = depth < min_total
        if shallow.any():
            logging.info("Dropped %d samples with fewer than %g total reads", int(shallow.sum()), min_total)
        features, outcome = features.loc[~shallow], outcome.loc[~shallow]
    y = encode_target(outcome, positive_class)
    features = datasets.filter_prevalence(
        features,
        float(pre_cfg.get("min_prevalence", 0.0)),
        float(pre_cfg.get("min_abundance", 0.0)),
    )
    if features.shape[1] == 0:
        raise ValueError("No taxa left after prevalence filtering; lower preprocessing.min_prevalence")
    features = datasets.apply_transform(
        features,
        pre_cfg.get("transform", "clr"),
        float(pre_cfg.get("pseudocount", 1e-6)),
    )
    processed = features.copy()
    processed[target_col] = y.values
    logging.info(
        "Processed table: %d samples, %d taxa, %d positive",
        processed.shape[0],
        features.shape[1],
        int(y.sum()),
    )
    return processed


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    config = load_config(args.config)
    data_cfg = config.get("data", {}) or {}
    sample_id = data_cfg.get("sample_id", "sample_id")
    abundance = load_abundance(
        Path(config["paths"]["abundance"]),
        sample_id,
        samples_as_rows=bool(data_cfg.get("samples_as_rows", True)),
    )
    metadata = read_table(Path(config["paths"]["metadata"]), index_col=sample_id)
    df = build_processed_table(abundance, metadata, config)
    processed_path = Path(config["paths"]["processed"])
    processed_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(processed_path, index=True, index_label=sample_id)
    logging.info("Processed data written to %s", processed_path)


if __name__ == "__main__":  # pragma: no cover
    main()
