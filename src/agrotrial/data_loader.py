"""
Data loading and preprocessing utilities.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from .constants import (
    COL_REPLACE_MAP,
    ENVIRONMENT_COL,
    KEY_COLUMNS,
    LOCATION_COL,
    TRAIT_COLUMNS,
)
from .exceptions import NoObservationsError

logger = logging.getLogger(__name__)


def sanitize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Standardize column names for formula processing.

    Replaces spaces, hyphens, and special characters with underscores
    to make column names safe for statistical formulas. Cell values
    (e.g. genotype names with parentheses) are left untouched.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame with potentially problematic column names.

    Returns
    -------
    pd.DataFrame
        DataFrame with sanitized column names.
    """
    rename_map = {}
    for col in df.columns:
        name = str(col).strip()
        for old, new in COL_REPLACE_MAP.items():
            name = name.replace(old, new)
        rename_map[col] = name
    return df.rename(columns=rename_map)


def load_data_from_path(
    path: str | Path,
    sheet_name: Optional[str] = None
) -> pd.DataFrame:
    """
    Load trial data from a CSV or Excel file.

    Parameters
    ----------
    path : str | Path
        File path to CSV or Excel file.
    sheet_name : Optional[str]
        Sheet name for Excel files. If None, uses first sheet.

    Returns
    -------
    pd.DataFrame
        Loaded and sanitized DataFrame.

    Raises
    ------
    ValueError
        If file format is not CSV or XLSX.
    """
    p = Path(path)

    if p.suffix.lower() == ".csv":
        df = pd.read_csv(p)
    elif p.suffix.lower() in [".xlsx", ".xls"]:
        df = pd.read_excel(p, sheet_name=sheet_name or 0)
    else:
        raise ValueError(f"Unsupported file format: {p.suffix}")

    return sanitize_columns(df)


def coerce_numeric_columns(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    """
    Coerce specified columns to numeric type.

    Parameters
    ----------
    df : pd.DataFrame
        Input DataFrame.
    columns : list[str]
        Column names to coerce to numeric.

    Returns
    -------
    pd.DataFrame
        DataFrame with coerced columns (NaN for non-convertible values).
    """
    out = df.copy()
    for col in columns:
        out[col] = pd.to_numeric(out[col], errors="coerce")
    return out


def prepare_trial_frame(
    df: pd.DataFrame,
    trait_columns: Optional[list[str]] = None,
) -> pd.DataFrame:
    """
    Validate a raw trial table and normalise its key columns.

    Key columns (Location, Rep, Treatment, Genotype) become strings with
    surrounding whitespace removed, an ``Environment`` column mirroring
    Location is added, and trait columns are coerced to nullable floats.

    Parameters
    ----------
    df : pd.DataFrame
        Raw observations.
    trait_columns : Optional[list[str]]
        Trait columns to coerce. Defaults to every known trait present.

    Returns
    -------
    pd.DataFrame
        Cleaned copy ready for the pipeline.

    Raises
    ------
    KeyError
        If a key column or a requested trait column is missing.
    """
    missing = [c for c in KEY_COLUMNS if c not in df.columns]
    if missing:
        raise KeyError(f"Key columns missing from dataframe: {missing}")

    if trait_columns is None:
        trait_columns = [c for c in TRAIT_COLUMNS if c in df.columns]
    missing_traits = [c for c in trait_columns if c not in df.columns]
    if missing_traits:
        raise KeyError(f"Trait columns missing from dataframe: {missing_traits}")

    out = df.dropna(subset=KEY_COLUMNS).copy()
    dropped = len(df) - len(out)
    if dropped:
        logger.warning("Dropped %d rows with missing key columns", dropped)
    for col in KEY_COLUMNS:
        out[col] = out[col].astype(str).str.strip()
    out[ENVIRONMENT_COL] = out[LOCATION_COL]
    out = coerce_numeric_columns(out, trait_columns)
    return out.reset_index(drop=True)


def environments(df: pd.DataFrame) -> list[str]:
    """Sorted environment levels present in the table."""
    return sorted(df[ENVIRONMENT_COL].dropna().astype(str).unique().tolist())


def select_observations(
    df: pd.DataFrame,
    response: str,
    environment: Optional[str] = None,
) -> pd.DataFrame:
    """
    Rows with a non-missing response, optionally restricted to one environment.

    Raises
    ------
    NoObservationsError
        If the subset is empty.
    """
    sub = df
    if environment is not None:
        sub = sub[sub[ENVIRONMENT_COL].astype(str) == str(environment)]
    sub = sub[pd.to_numeric(sub[response], errors="coerce").notna()]
    if sub.empty:
        raise NoObservationsError(response, environment)
    return sub.copy()
