"""forest_da.io.observations

Long-format observation table: one row per (datetime, variable, observation),
optionally with a per-row `sd`. Channels are sparse; most days carry no row
for most variables, and rows for recent days may only appear in later runs
(measurement latency).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from forest_da.core.constants import (
    OBS_VARIABLES,
    COL_DATETIME,
    COL_VARIABLE,
    COL_OBSERVATION,
    COL_SD,
)
from forest_da.core.errors import ConfigurationError


class ObservationTable:
    """Immutable view over cleaned observations, indexed by day."""

    def __init__(self, df: Optional[pd.DataFrame] = None):
        if df is None:
            df = pd.DataFrame(columns=[COL_DATETIME, COL_VARIABLE, COL_OBSERVATION])
        missing = {COL_DATETIME, COL_VARIABLE, COL_OBSERVATION} - set(df.columns)
        if missing:
            raise ConfigurationError(f"Observation table missing column(s): {', '.join(sorted(missing))}")
        cols = [COL_DATETIME, COL_VARIABLE, COL_OBSERVATION] + ([COL_SD] if COL_SD in df.columns else [])
        out = df[cols].copy()
        out[COL_DATETIME] = pd.to_datetime(out[COL_DATETIME], utc=True).dt.tz_localize(None).dt.normalize()
        out[COL_VARIABLE] = out[COL_VARIABLE].astype(str)
        out[COL_OBSERVATION] = pd.to_numeric(out[COL_OBSERVATION], errors="coerce")
        unknown = sorted(set(out[COL_VARIABLE]) - set(OBS_VARIABLES))
        if unknown:
            raise ConfigurationError(
                f"Unknown observation variable(s): {', '.join(unknown)} (expected {', '.join(OBS_VARIABLES)})"
            )
        out = out.dropna(subset=[COL_OBSERVATION]).sort_values([COL_DATETIME, COL_VARIABLE]).reset_index(drop=True)
        self._df = out
        self._by_day = {day: grp for day, grp in out.groupby(COL_DATETIME, sort=True)}

    def __len__(self) -> int:
        return len(self._df)

    @property
    def frame(self) -> pd.DataFrame:
        return self._df.copy()

    def rows_at(self, date) -> pd.DataFrame:
        """All observation rows on a day (empty frame if none)."""
        day = pd.Timestamp(date).normalize()
        grp = self._by_day.get(day)
        if grp is None:
            return self._df.iloc[0:0]
        return grp

    def has_observations(self, date) -> bool:
        return pd.Timestamp(date).normalize() in self._by_day

    def dates_with_observations(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex(sorted(self._by_day.keys()))

    def window(self, start, end) -> "ObservationTable":
        """Rows with start <= datetime <= end."""
        start = pd.Timestamp(start).normalize()
        end = pd.Timestamp(end).normalize()
        mask = (self._df[COL_DATETIME] >= start) & (self._df[COL_DATETIME] <= end)
        return ObservationTable(self._df.loc[mask])

    def to_dense(self, dates: Sequence, variables: Sequence[str] = OBS_VARIABLES) -> np.ndarray:
        """[days, channels] array of observations (NaN where absent; mean of duplicates)."""
        dates = pd.DatetimeIndex(pd.to_datetime(dates)).normalize()
        out = np.full((len(dates), len(variables)), np.nan)
        if self._df.empty:
            return out
        wide = self._df.pivot_table(index=COL_DATETIME, columns=COL_VARIABLE, values=COL_OBSERVATION, aggfunc="mean")
        pos = {d: i for i, d in enumerate(dates)}
        for j, v in enumerate(variables):
            if v not in wide.columns:
                continue
            col = wide[v].dropna()
            for day, value in col.items():
                i = pos.get(day)
                if i is not None:
                    out[i, j] = value
        return out


def read_observations(path: Path | str) -> ObservationTable:
    """Read a long-format observation CSV (datetime, variable, observation[, sd])."""
    df = pd.read_csv(path)
    return ObservationTable(df)
