"""forest_da.model.forest

Three-pool forest carbon model (leaf, wood, soil organic matter) advanced by
one explicit Euler day and vectorized over ensemble members.

Processes
- Canopy: LAI from leaf carbon and SLA, light absorption 1 - exp(-0.5 LAI)
- GPP: light-use efficiency alpha times absorbed PAR (clamped >= 0)
- Autotrophic respiration as a fixed fraction of GPP; NPP split leaf/wood
- Heterotrophic respiration: Rbasal * SOM * Q10^(T/10) (clamped >= 0)
- Leaf litterfall inside a day-of-year window, wood mortality
- Process noise per pool, then pools clamped at zero

Units: pools Mg C/ha, fluxes Mg C/ha/day, PAR umol/m2/s, temperature degC.
No member interacts with another; the only shared inputs are the drivers.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Dict

import numpy as np
from numpy.random import Generator

from forest_da.core.config import ModelParams, MODEL_PARAM_NAMES
from forest_da.core.constants import (
    POOLS,
    POOL_LEAF,
    POOL_WOOD,
    POOL_SOM,
    FLUXES,
    OUTPUT_VARIABLES,
    UMOL_TO_MGC_HA_DAY,
    LEAF_TO_LAI_FACTOR,
)
from forest_da.core.errors import ConfigurationError
from forest_da.util.stats import gaussian_noise


POOL_INDEX = {name: i for i, name in enumerate(POOLS)}


@dataclass
class EnsembleState:
    """Carbon pools for every member, shape [members, 3] in POOLS order."""
    values: np.ndarray

    def __post_init__(self) -> None:
        self.values = np.asarray(self.values, dtype=float)
        if self.values.ndim != 2 or self.values.shape[1] != len(POOLS):
            raise ConfigurationError(f"EnsembleState expects shape [members, {len(POOLS)}], got {self.values.shape}")

    @classmethod
    def from_pools(cls, leaf_carbon, wood_carbon, soil_organic_matter) -> "EnsembleState":
        return cls(np.column_stack([
            np.atleast_1d(np.asarray(leaf_carbon, dtype=float)),
            np.atleast_1d(np.asarray(wood_carbon, dtype=float)),
            np.atleast_1d(np.asarray(soil_organic_matter, dtype=float)),
        ]))

    @property
    def n_members(self) -> int:
        return self.values.shape[0]

    def pool(self, name: str) -> np.ndarray:
        return self.values[:, POOL_INDEX[name]]

    @property
    def leaf_carbon(self) -> np.ndarray:
        return self.pool(POOL_LEAF)

    @property
    def wood_carbon(self) -> np.ndarray:
        return self.pool(POOL_WOOD)

    @property
    def soil_organic_matter(self) -> np.ndarray:
        return self.pool(POOL_SOM)

    def copy(self) -> "EnsembleState":
        return EnsembleState(self.values.copy())


@dataclass
class ParameterSet:
    """Per-member parameter vectors, one float array of length N per field."""
    alpha: np.ndarray
    SLA: np.ndarray
    leaf_frac: np.ndarray
    Ra_frac: np.ndarray
    Rbasal: np.ndarray
    Q10: np.ndarray
    litterfall_rate: np.ndarray
    litterfall_start: np.ndarray
    litterfall_length: np.ndarray
    mortality: np.ndarray
    sigma_leaf: np.ndarray
    sigma_wood: np.ndarray
    sigma_soil: np.ndarray

    @classmethod
    def from_params(cls, params: ModelParams, n_members: int) -> "ParameterSet":
        """Broadcast scalar ModelParams to an ensemble of n_members."""
        params.validate()
        return cls(**{
            name: np.full(n_members, float(getattr(params, name)))
            for name in MODEL_PARAM_NAMES
        })

    @property
    def n_members(self) -> int:
        return int(self.alpha.shape[0])

    def with_values(self, **values: np.ndarray) -> "ParameterSet":
        """Return a copy with the given fields replaced (e.g. fitted parameters)."""
        unknown = sorted(set(values) - set(MODEL_PARAM_NAMES))
        if unknown:
            raise ConfigurationError(f"Unknown parameter(s): {', '.join(unknown)}")
        return replace(self, **{k: np.asarray(v, dtype=float) for k, v in values.items()})

    def validate(self) -> None:
        n = self.n_members
        for f in fields(self):
            arr = getattr(self, f.name)
            if np.shape(arr) != (n,):
                raise ConfigurationError(f"Parameter '{f.name}' has shape {np.shape(arr)}, expected ({n},)")
        if np.any(self.litterfall_length <= 0):
            raise ConfigurationError("litterfall_length must be > 0 for every member")
        for name in ("sigma_leaf", "sigma_wood", "sigma_soil"):
            if np.any(getattr(self, name) < 0):
                raise ConfigurationError(f"{name} must be >= 0 for every member")


@dataclass
class StepDrivers:
    """Drivers for one simulated day, one value per member."""
    temp: np.ndarray
    par: np.ndarray
    doy: np.ndarray


@dataclass
class StepOutput:
    """Updated pools plus the nine derived fluxes for one day."""
    state: EnsembleState
    fluxes: Dict[str, np.ndarray]

    def as_array(self) -> np.ndarray:
        """[members, 12] in OUTPUT_VARIABLES order."""
        return np.column_stack([self.state.values] + [self.fluxes[name] for name in FLUXES])

    def variable(self, name: str) -> np.ndarray:
        if name in POOL_INDEX:
            return self.state.pool(name)
        return self.fluxes[name]


def forest_step(
    states: EnsembleState,
    params: ParameterSet,
    drivers: StepDrivers,
    rng: Generator,
) -> StepOutput:
    """Advance every member by one day.

    Parameters
    ----------
    states : EnsembleState
        Pools at day t-1.
    params : ParameterSet
        Per-member parameters (fitted ones already evolved for day t).
    drivers : StepDrivers
        Temperature, PAR and day-of-year at day t.
    rng : numpy.random.Generator
        Source of process noise; untouched when all sigmas are zero.
    """
    leaf = states.leaf_carbon
    wood = states.wood_carbon
    som = states.soil_organic_matter
    k = UMOL_TO_MGC_HA_DAY

    lai = leaf * params.SLA * LEAF_TO_LAI_FACTOR
    fraction_absorbed = 1.0 - np.exp(-0.5 * lai)
    gpp = np.maximum(0.0, k * params.alpha * fraction_absorbed * drivers.par)

    ra = gpp * params.Ra_frac
    npp = gpp - ra
    npp_leaf = npp * params.leaf_frac
    npp_wood = npp * (1.0 - params.leaf_frac)

    rh = np.maximum(0.0, k * params.Rbasal * som * params.Q10 ** (drivers.temp / 10.0))

    in_window = (drivers.doy >= params.litterfall_start) & (
        drivers.doy < params.litterfall_start + params.litterfall_length
    )
    litterfall = np.where(
        in_window,
        leaf * params.litterfall_rate * (365.0 / params.litterfall_length),
        0.0,
    )
    mortality = wood * params.mortality

    d_leaf = npp_leaf - litterfall
    d_wood = npp_wood - mortality
    d_som = litterfall + mortality - rh

    updated = np.column_stack([leaf + d_leaf, wood + d_wood, som + d_som])
    sigma = np.column_stack([params.sigma_leaf, params.sigma_wood, params.sigma_soil])
    updated = np.maximum(gaussian_noise(rng, updated, sigma), 0.0)

    fluxes = {
        "lai": lai,
        "gpp": gpp,
        "nee": ra + rh - gpp,
        "ra": ra,
        "npp_wood": npp_wood,
        "npp_leaf": npp_leaf,
        "rh": rh,
        "litterfall": litterfall,
        "mortality": mortality,
    }
    return StepOutput(state=EnsembleState(updated), fluxes=fluxes)


def output_to_state(output: np.ndarray) -> EnsembleState:
    """Pools from a [members, 12] output row block."""
    return EnsembleState(np.array(output[:, : len(POOLS)], dtype=float))


__all__ = [
    "EnsembleState",
    "ParameterSet",
    "StepDrivers",
    "StepOutput",
    "forest_step",
    "output_to_state",
    "OUTPUT_VARIABLES",
]
