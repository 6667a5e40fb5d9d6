"""forest_da.io.publish

Format a forecast table for submission to an ensemble forecasting challenge
(formatting only; uploading is left to the caller).

Output schema
  project_id, model_id, datetime, reference_datetime, duration, site_id,
  family, parameter, variable, prediction
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pandas as pd

from forest_da.core.config import PublishConfig
from forest_da.core.constants import (
    COL_DATETIME,
    COL_PARAMETER,
    COL_VARIABLE,
    COL_PREDICTION,
)

SUBMISSION_COLUMNS = [
    "project_id",
    "model_id",
    "datetime",
    "reference_datetime",
    "duration",
    "site_id",
    "family",
    "parameter",
    "variable",
    "prediction",
]


def to_submission(
    forecast: pd.DataFrame,
    *,
    site_id: str,
    publish: PublishConfig,
    reference_date,
    variables: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Map the long forecast table onto the challenge schema.

    Rows for variables outside ``variables`` (default: publish.variables) are
    dropped; rows with non-finite predictions are dropped as well.
    """
    keep = list(variables or publish.variables)
    df = forecast[forecast[COL_VARIABLE].isin(keep)].copy()
    df = df[pd.to_numeric(df[COL_PREDICTION], errors="coerce").notna()]
    out = pd.DataFrame({
        "project_id": publish.project_id,
        "model_id": publish.model_id,
        "datetime": pd.to_datetime(df[COL_DATETIME]).dt.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "reference_datetime": pd.Timestamp(reference_date).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "duration": "P1D",
        "site_id": site_id,
        "family": "ensemble",
        "parameter": df[COL_PARAMETER].astype(int),
        "variable": df[COL_VARIABLE].astype(str),
        "prediction": df[COL_PREDICTION].astype(float),
    })
    return out[SUBMISSION_COLUMNS].reset_index(drop=True)


def submission_filename(publish: PublishConfig, reference_date) -> str:
    """<project_id>-<YYYY-MM-DD>-<model_id>.csv.gz"""
    return f"{publish.project_id}-{pd.Timestamp(reference_date):%Y-%m-%d}-{publish.model_id}.csv.gz"


def write_submission(df: pd.DataFrame, out_dir: Path | str, publish: PublishConfig, reference_date) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / submission_filename(publish, reference_date)
    df.to_csv(path, index=False, compression="gzip")
    return path


__all__ = ["to_submission", "write_submission", "submission_filename", "SUBMISSION_COLUMNS"]
