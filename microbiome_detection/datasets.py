"""Abundance table transforms used during data preparation.

Microbiome profiles arrive as sample × taxon tables of read counts or
relative abundances.  The functions here normalise and filter such
tables before modelling.  Each transform either acts within a single
sample (total‑sum scaling, CLR, log) or uses label‑free column
statistics (prevalence, z‑scores), so none of them can leak outcome
information into the features.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

TRANSFORMS = ("none", "relative", "log", "clr", "zscore")


def total_sum_scale(df: pd.DataFrame) -> pd.DataFrame:
    """Convert counts to per‑sample relative abundances.

    Samples whose total is zero are left as all zeros.
    """
    totals = df.sum(axis=1)
    empty = totals == 0
    if empty.any():
        logging.warning("%d samples have zero total abundance; leaving them as zeros.", int(empty.sum()))
    scaled = df.div(totals.replace(0, np.nan), axis=0)
    return scaled.fillna(0.0)


def filter_prevalence(df: pd.DataFrame, min_prevalence: float, min_abundance: float = 0.0) -> pd.DataFrame:
    """Drop taxa observed in too few samples.

    Parameters
    ----------
    df : pandas.DataFrame
        Sample × taxon abundance table.
    min_prevalence : float
        Minimum fraction of samples (0–1) in which a taxon must exceed
        ``min_abundance`` to be kept.
    min_abundance : float, default 0.0
        Detection threshold for a taxon in a sample.

    Returns
    -------
    pandas.DataFrame
        Table restricted to the prevalent taxa.
    """
    if not 0.0 <= min_prevalence <= 1.0:
        raise ValueError(f"min_prevalence must lie in [0, 1], got {min_prevalence}")
    if df.empty:
        return df
    prevalence = (df > min_abundance).mean(axis=0)
    keep = prevalence[prevalence >= min_prevalence].index
    dropped = df.shape[1] - len(keep)
    if dropped:
        logging.info("Prevalence filter removed %d of %d taxa", dropped, df.shape[1])
    return df.loc[:, keep]


def log_transform(df: pd.DataFrame, pseudocount: float = 1e-6) -> pd.DataFrame:
    """Return log10(x + pseudocount)."""
    if pseudocount <= 0:
        raise ValueError("pseudocount must be positive")
    return np.log10(df + pseudocount)


def clr_transform(df: pd.DataFrame, pseudocount: float = 1e-6) -> pd.DataFrame:
    """Centred log‑ratio transform applied per sample.

    Each value becomes ``log(x + p) - mean(log(x + p))`` over the taxa of
    its sample, so every row of the result sums to zero.
    """
    if pseudocount <= 0:
        raise ValueError("pseudocount must be positive")
    logged = np.log(df + pseudocount)
    return logged.sub(logged.mean(axis=1), axis=0)


def compute_zscores(df: pd.DataFrame) -> pd.DataFrame:
    """Z‑score every numeric column.

    Column names are prefixed with ``z_``.  Zero‑variance columns
    become zero.
    """
    numeric_cols = df.select_dtypes(include=[np.number]).columns
    z_df = pd.DataFrame(index=df.index)
    for col in numeric_cols:
        std = df[col].std(ddof=0)
        if std == 0 or np.isnan(std):
            logging.warning("Column '%s' has zero variance; z‑scores will be zero.", col)
            z_df[f"z_{col}"] = 0.0
        else:
            z_df[f"z_{col}"] = (df[col] - df[col].mean()) / std
    return z_df


def apply_transform(df: pd.DataFrame, method: str = "clr", pseudocount: float = 1e-6) -> pd.DataFrame:
    """Apply one of the named transforms in :data:`TRANSFORMS`."""
    method = (method or "none").lower()
    if method == "none":
        return df
    if method == "relative":
        return total_sum_scale(df)
    if method == "log":
        return log_transform(total_sum_scale(df), pseudocount)
    if method == "clr":
        return clr_transform(total_sum_scale(df), pseudocount)
    if method == "zscore":
        return compute_zscores(df)
    raise ValueError(f"Unknown transform '{method}'. Choose from {', '.join(TRANSFORMS)}.")
