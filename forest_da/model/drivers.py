"""forest_da.model.drivers

Assemble per-member daily drivers (temperature, PAR, day-of-year) for a
simulation window from long-format driver feeds.

Feeds
- historical: assimilated/back-filled weather, used for dates before "today"
- forecast: forward-looking ensemble weather, used from "today" onward
Both use the schema {datetime, variable in {temp, PAR}, prediction,
parameter}; `parameter` is the weather ensemble member id and may be absent
for a single deterministic series.

Each particle is bound to one weather member id for the whole window, so a
particle's drivers stay internally consistent from day to day.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from numpy.random import Generator

from forest_da.core.constants import (
    COL_DATETIME,
    COL_VARIABLE,
    COL_PREDICTION,
    COL_PARAMETER,
    DRIVER_TEMP,
    DRIVER_PAR,
    DRIVER_VARIABLES,
)
from forest_da.core.errors import ConfigurationError, MissingDriverCoverage
from forest_da.model.forest import StepDrivers


@dataclass(frozen=True)
class DriverSeries:
    """Read-only per-member drivers, arrays shaped [days, members]."""
    dates: pd.DatetimeIndex
    temp: np.ndarray
    par: np.ndarray
    doy: np.ndarray

    def __post_init__(self) -> None:
        shape = (len(self.dates), self.temp.shape[1] if self.temp.ndim == 2 else -1)
        for name in ("temp", "par", "doy"):
            arr = getattr(self, name)
            if arr.ndim != 2 or arr.shape != shape:
                raise ConfigurationError(f"Driver '{name}' has shape {arr.shape}, expected {shape}")
            arr.flags.writeable = False

    @property
    def n_members(self) -> int:
        return int(self.temp.shape[1])

    @property
    def n_days(self) -> int:
        return len(self.dates)

    def at(self, t: int) -> StepDrivers:
        return StepDrivers(temp=self.temp[t], par=self.par[t], doy=self.doy[t])


def _normalize_dates(values) -> pd.DatetimeIndex:
    idx = pd.DatetimeIndex(pd.to_datetime(values))
    if idx.tz is not None:
        idx = idx.tz_convert("UTC").tz_localize(None)
    return idx.normalize()


def read_driver_table(path: Path | str) -> pd.DataFrame:
    """Read a long-format driver CSV and aggregate it to daily means.

    Returns columns datetime (midnight), variable, parameter, prediction.
    """
    df = pd.read_csv(path)
    return normalize_driver_table(df, source=str(path))


def normalize_driver_table(df: pd.DataFrame, *, source: str = "driver table") -> pd.DataFrame:
    needed = {COL_DATETIME, COL_VARIABLE, COL_PREDICTION}
    missing = needed - set(df.columns)
    if missing:
        raise ConfigurationError(f"{source}: missing column(s) {', '.join(sorted(missing))}")
    out = df.copy()
    out[COL_DATETIME] = _normalize_dates(out[COL_DATETIME])
    if COL_PARAMETER not in out.columns:
        out[COL_PARAMETER] = 0
    out[COL_PARAMETER] = pd.to_numeric(out[COL_PARAMETER], errors="raise").astype(int)
    out[COL_PREDICTION] = pd.to_numeric(out[COL_PREDICTION], errors="coerce")
    out = out[out[COL_VARIABLE].isin(DRIVER_VARIABLES)].dropna(subset=[COL_PREDICTION])
    # Sub-daily feeds collapse to daily means
    out = (
        out.groupby([COL_DATETIME, COL_VARIABLE, COL_PARAMETER], as_index=False)[COL_PREDICTION]
        .mean()
    )
    return out


def _pivot(feed: Optional[pd.DataFrame], variable: str) -> pd.DataFrame:
    """Wide table indexed by date with one column per weather member id."""
    if feed is None or feed.empty:
        return pd.DataFrame()
    sub = feed[feed[COL_VARIABLE] == variable]
    return sub.pivot(index=COL_DATETIME, columns=COL_PARAMETER, values=COL_PREDICTION).sort_index()


def _member_ids(*wides: pd.DataFrame) -> list[int]:
    ids: set[int] = set()
    for w in wides:
        ids.update(int(c) for c in w.columns)
    return sorted(ids)


def assign_driver_members(
    available: Sequence[int],
    n_members: int,
    rng: Optional[Generator],
    assignment: str = "random",
) -> np.ndarray:
    """Bind each particle to one weather member id (random with replacement or cycling)."""
    available = np.asarray(list(available), dtype=int)
    if available.size == 0:
        raise ConfigurationError("Driver feeds contain no ensemble members")
    if assignment == "cycle":
        return available[np.arange(n_members) % available.size]
    if assignment == "random":
        if rng is None:
            raise ConfigurationError("Random driver assignment needs a random generator")
        return rng.choice(available, size=n_members, replace=True)
    raise ConfigurationError(f"Unknown driver assignment '{assignment}'")


def _fill_from(wide: pd.DataFrame, day: pd.Timestamp, member_ids: np.ndarray) -> Optional[np.ndarray]:
    """Values for one day, mapping each particle's member id into this feed.

    Ids absent from the feed wrap modulo the feed's member count (e.g. a
    single-member historical feed is shared by all particles).
    """
    if wide.empty or day not in wide.index:
        return None
    row = wide.loc[day]
    cols = np.asarray(wide.columns, dtype=int)
    values = np.empty(member_ids.size, dtype=float)
    for i, mid in enumerate(member_ids):
        col = mid if mid in cols else cols[int(mid) % cols.size]
        values[i] = row[col]
    if not np.all(np.isfinite(values)):
        return None
    return values


def assemble_drivers(
    dates: Sequence,
    n_members: int,
    *,
    historical: Optional[pd.DataFrame],
    forecast: Optional[pd.DataFrame],
    today,
    rng: Optional[Generator] = None,
    assignment: str = "random",
) -> DriverSeries:
    """Build a DriverSeries covering every date in ``dates``.

    Dates before ``today`` prefer the historical feed, dates on/after prefer
    the forecast feed; either falls back to the other feed when its preferred
    one lacks that day. Raises MissingDriverCoverage if any day lacks temp or
    PAR in both feeds.
    """
    dates = _normalize_dates(dates)
    today = pd.Timestamp(today).normalize()
    if historical is not None and not historical.empty:
        historical = normalize_driver_table(historical, source="historical feed")
    if forecast is not None and not forecast.empty:
        forecast = normalize_driver_table(forecast, source="forecast feed")

    hist = {v: _pivot(historical, v) for v in DRIVER_VARIABLES}
    fcst = {v: _pivot(forecast, v) for v in DRIVER_VARIABLES}
    ids = _member_ids(*hist.values(), *fcst.values())
    member_ids = assign_driver_members(ids, n_members, rng, assignment)
    logger.debug("Driver members bound to particles: {} unique of {}", len(np.unique(member_ids)), len(ids))

    out = {v: np.empty((len(dates), n_members), dtype=float) for v in DRIVER_VARIABLES}
    missing = []
    for t, day in enumerate(dates):
        order = (hist, fcst) if day < today else (fcst, hist)
        for v in DRIVER_VARIABLES:
            vals = _fill_from(order[0][v], day, member_ids)
            if vals is None:
                vals = _fill_from(order[1][v], day, member_ids)
            if vals is None:
                missing.append(day)
                break
            out[v][t] = vals
    if missing:
        raise MissingDriverCoverage(sorted(set(missing)))

    doy = np.repeat(dates.dayofyear.to_numpy(dtype=float)[:, None], n_members, axis=1)
    return DriverSeries(dates=dates, temp=out[DRIVER_TEMP], par=out[DRIVER_PAR], doy=doy)


def constant_drivers(dates: Sequence, n_members: int, *, temp: float, par: float) -> DriverSeries:
    """Deterministic drivers with fixed temperature and PAR; doy follows the calendar."""
    dates = _normalize_dates(dates)
    shape = (len(dates), n_members)
    doy = np.repeat(dates.dayofyear.to_numpy(dtype=float)[:, None], n_members, axis=1)
    return DriverSeries(
        dates=dates,
        temp=np.full(shape, float(temp)),
        par=np.full(shape, float(par)),
        doy=doy,
    )
