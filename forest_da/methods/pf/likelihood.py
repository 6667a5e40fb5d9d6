"""forest_da.methods.pf.likelihood

Gaussian log-likelihood of the day's observations given each member's
predicted model output (particle filter weighting without resampling).

Each observation row is an independent channel: per-member log-densities
are summed across rows, which is the log of the product of likelihoods and
stays finite long after the linear product would underflow.

Configuration
- One observation sd per variable channel (data_assimilation.likelihood.obs_sd)
- An optional per-row `sd` column in the observation table overrides it
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from forest_da.core.constants import (
    OBS_VARIABLES,
    OBSERVATION_OPERATOR,
    OUTPUT_INDEX,
    COL_VARIABLE,
    COL_OBSERVATION,
    COL_SD,
)
from forest_da.core.errors import ConfigurationError
from forest_da.util.stats import gaussian_logpdf


@dataclass
class LikelihoodParams:
    """Observation error sd per channel, in model units."""
    lai: float = 0.1
    wood: float = 1.0
    som: float = 1.0
    nee: float = 0.005

    def sd_for(self, variable: str) -> float:
        if variable not in OBS_VARIABLES:
            raise ConfigurationError(f"Unknown observation variable '{variable}'")
        return float(getattr(self, variable))

    def validate(self) -> None:
        for v in OBS_VARIABLES:
            s = getattr(self, v)
            if not (np.isfinite(s) and s > 0):
                raise ConfigurationError(f"Observation sd for '{v}' must be > 0 (got {s})")


def predicted_for(output: np.ndarray, variable: str) -> np.ndarray:
    """H(x): the model output column an observation channel is compared with."""
    if variable not in OBSERVATION_OPERATOR:
        raise ConfigurationError(f"No observation operator for variable '{variable}'")
    return output[:, OUTPUT_INDEX[OBSERVATION_OPERATOR[variable]]]


def log_likelihood(output: np.ndarray, obs_rows: pd.DataFrame, params: LikelihoodParams) -> np.ndarray:
    """Sum of Gaussian log-densities over all observation rows, per member.

    Parameters
    ----------
    output : ndarray
        Predicted model output for one day, shape [members, 12].
    obs_rows : DataFrame
        Observations for that day (variable, observation[, sd]).
    params : LikelihoodParams
        Fallback observation sd per channel.
    """
    logL = np.zeros(output.shape[0], dtype=float)
    has_sd = COL_SD in obs_rows.columns
    for row in obs_rows.itertuples(index=False):
        var = str(getattr(row, COL_VARIABLE))
        y = float(getattr(row, COL_OBSERVATION))
        sd = getattr(row, COL_SD) if has_sd else None
        sigma = float(sd) if sd is not None and np.isfinite(sd) and sd > 0 else params.sd_for(var)
        residual = y - predicted_for(output, var)
        logL += gaussian_logpdf(residual, sigma)
    return logL
