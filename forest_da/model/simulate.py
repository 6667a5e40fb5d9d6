"""forest_da.model.simulate

Ensemble simulator: iterate the forest model over a date range, optionally
handing each predicted day to a particle filter.

Key Behaviors
- Day 0 is the seed: pools (and fitted parameters, weights) as given; the
  flux columns of the seed day are NaN because they are never computed.
- Days 1..N-1 are strictly sequential: random walk of fitted parameters,
  model step, then analysis if a filter is configured and the day is on or
  before ``assimilate_until``.
- All buffers are preallocated [days, members, ...] arrays owned by the
  returned SimulationResult; nothing is kept at module level.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from numpy.random import Generator

from forest_da.core.constants import (
    OUTPUT_VARIABLES,
    OUTPUT_INDEX,
    POOLS,
    COL_DATETIME,
    COL_PARAMETER,
    COL_VARIABLE,
    COL_PREDICTION,
)
from forest_da.core.config import MODEL_PARAM_NAMES
from forest_da.core.errors import ConfigurationError
from forest_da.io.observations import ObservationTable
from forest_da.methods.pf.filter import ParticleFilter, uniform_weights
from forest_da.model.drivers import DriverSeries
from forest_da.model.forest import EnsembleState, ParameterSet, forest_step, output_to_state
from forest_da.util.stats import effective_sample_size


@dataclass
class SimulationResult:
    """Ensemble trajectory plus the filter's bookkeeping for every day."""
    dates: pd.DatetimeIndex
    trajectory: np.ndarray
    fitted: np.ndarray
    fitted_names: tuple
    weights: np.ndarray
    assimilated: np.ndarray
    degenerate: np.ndarray
    ess: np.ndarray

    @property
    def n_days(self) -> int:
        return self.trajectory.shape[0]

    @property
    def n_members(self) -> int:
        return self.trajectory.shape[1]

    def variable(self, name: str) -> np.ndarray:
        """[days, members] values of one pool or flux."""
        return self.trajectory[:, :, OUTPUT_INDEX[name]]

    def fitted_parameter(self, name: str) -> np.ndarray:
        return self.fitted[:, :, self.fitted_names.index(name)]

    def index_of(self, date) -> int:
        day = pd.Timestamp(date).normalize()
        hits = np.flatnonzero(self.dates == day)
        if hits.size != 1:
            raise KeyError(f"{day.date()} occurs {hits.size} times in the simulated dates")
        return int(hits[0])

    def state_at(self, i: int) -> EnsembleState:
        return EnsembleState(self.trajectory[i, :, : len(POOLS)].copy())

    def slice(self, start=None, end=None) -> "SimulationResult":
        """Inclusive date slice (copies)."""
        mask = np.ones(self.n_days, dtype=bool)
        if start is not None:
            mask &= self.dates >= pd.Timestamp(start).normalize()
        if end is not None:
            mask &= self.dates <= pd.Timestamp(end).normalize()
        return SimulationResult(
            dates=self.dates[mask],
            trajectory=self.trajectory[mask].copy(),
            fitted=self.fitted[mask].copy(),
            fitted_names=self.fitted_names,
            weights=self.weights[mask].copy(),
            assimilated=self.assimilated[mask].copy(),
            degenerate=self.degenerate[mask].copy(),
            ess=self.ess[mask].copy(),
        )

    def to_frame(self, variables: Sequence[str] = OUTPUT_VARIABLES) -> pd.DataFrame:
        """Long format: datetime, parameter (member), variable, prediction."""
        variables = list(variables)
        cols = [OUTPUT_INDEX[v] for v in variables]
        days, members, nv = self.n_days, self.n_members, len(variables)
        block = self.trajectory[:, :, cols]  # [days, members, nv]
        return pd.DataFrame({
            COL_DATETIME: np.repeat(self.dates.to_numpy(), members * nv),
            COL_PARAMETER: np.tile(np.repeat(np.arange(members), nv), days),
            COL_VARIABLE: np.tile(np.asarray(variables, dtype=object), days * members),
            COL_PREDICTION: block.reshape(-1),
        })


def _check_sizes(
    state: EnsembleState,
    params: ParameterSet,
    drivers: DriverSeries,
    fitted: np.ndarray,
    weights: np.ndarray,
) -> None:
    sizes = {
        "state": state.n_members,
        "parameters": params.n_members,
        "drivers": drivers.n_members,
        "fitted parameters": fitted.shape[0],
        "weights": weights.shape[0],
    }
    if len(set(sizes.values())) != 1:
        detail = ", ".join(f"{k}={v}" for k, v in sizes.items())
        raise ConfigurationError(f"Ensemble size mismatch: {detail}")


def simulate(
    initial_state: EnsembleState,
    params: ParameterSet,
    drivers: DriverSeries,
    *,
    rng: Generator,
    fitted_names: Sequence[str] = (),
    initial_fitted: Optional[np.ndarray] = None,
    particle_filter: Optional[ParticleFilter] = None,
    observations: Optional[ObservationTable] = None,
    initial_weights: Optional[np.ndarray] = None,
    assimilate_until=None,
) -> SimulationResult:
    """Run the ensemble over every date of ``drivers``.

    Parameters
    ----------
    initial_state : EnsembleState
        Pools on the first date (the seed day).
    params : ParameterSet
        Per-member parameters; fitted ones are overridden each day.
    drivers : DriverSeries
        Drivers for every simulated date (defines the date axis).
    rng : numpy.random.Generator
        Single generator for process noise, random walk and resampling.
    fitted_names, initial_fitted
        Names and seed values [members, n_fitted] of the fitted parameters.
        Defaults to the values already in ``params``.
    particle_filter, observations
        Optional assimilation hook and the observations it uses.
    initial_weights
        Seed particle weights; uniform if omitted.
    assimilate_until
        Last date on which the filter may assimilate (inclusive).
    """
    fitted_names = tuple(fitted_names)
    unknown = [n for n in fitted_names if n not in MODEL_PARAM_NAMES]
    if unknown:
        raise ConfigurationError(f"Fitted parameter(s) not in the model: {', '.join(unknown)}")
    if particle_filter is not None and particle_filter.fitted_names != fitted_names:
        raise ConfigurationError(
            f"Filter fits {particle_filter.fitted_names} but the simulation carries {fitted_names}"
        )
    params.validate()

    n = initial_state.n_members
    if initial_fitted is None:
        initial_fitted = np.column_stack([getattr(params, name) for name in fitted_names]) if fitted_names else np.empty((n, 0))
    initial_fitted = np.asarray(initial_fitted, dtype=float)
    if initial_fitted.ndim == 1 and initial_fitted.size == n * len(fitted_names):
        initial_fitted = initial_fitted.reshape(n, len(fitted_names))
    if initial_fitted.ndim != 2 or initial_fitted.shape[1] != len(fitted_names):
        raise ConfigurationError(
            f"Initial fitted values have shape {initial_fitted.shape}, expected ({n}, {len(fitted_names)})"
        )
    if initial_weights is None:
        initial_weights = uniform_weights(n)
    initial_weights = np.asarray(initial_weights, dtype=float)
    _check_sizes(initial_state, params, drivers, initial_fitted, initial_weights)
    if observations is None:
        observations = ObservationTable()
    until = pd.Timestamp(assimilate_until).normalize() if assimilate_until is not None else None

    days = drivers.n_days
    trajectory = np.full((days, n, len(OUTPUT_VARIABLES)), np.nan)
    fitted = np.empty((days, n, len(fitted_names)))
    weights = np.empty((days, n))
    assimilated = np.zeros(days, dtype=bool)
    degenerate = np.zeros(days, dtype=bool)
    ess = np.empty(days)

    trajectory[0, :, : len(POOLS)] = initial_state.values
    fitted[0] = initial_fitted
    weights[0] = initial_weights
    ess[0] = effective_sample_size(initial_weights)

    state = initial_state
    for t in range(1, days):
        date = drivers.dates[t]
        if particle_filter is not None:
            fit_t = particle_filter.evolve_parameters(fitted[t - 1], rng)
        else:
            fit_t = fitted[t - 1].copy()
        params_t = params.with_values(**{name: fit_t[:, j] for j, name in enumerate(fitted_names)}) if fitted_names else params

        out = forest_step(state, params_t, drivers.at(t), rng).as_array()
        w = weights[t - 1]
        e = ess[t - 1]
        if particle_filter is not None and (until is None or date <= until):
            step = particle_filter.analyse(date, out, fit_t, w, observations.rows_at(date), rng)
            out, fit_t, w, e = step.output, step.fitted, step.weights, step.ess
            assimilated[t] = step.assimilated
            degenerate[t] = step.degenerate

        trajectory[t] = out
        fitted[t] = fit_t
        weights[t] = w
        ess[t] = e
        state = output_to_state(out)

    logger.debug(
        "Simulated {} day(s) x {} member(s) | assimilated={} degenerate={}",
        days,
        n,
        int(assimilated.sum()),
        int(degenerate.sum()),
    )
    return SimulationResult(
        dates=drivers.dates,
        trajectory=trajectory,
        fitted=fitted,
        fitted_names=fitted_names,
        weights=weights,
        assimilated=assimilated,
        degenerate=degenerate,
        ess=ess,
    )
