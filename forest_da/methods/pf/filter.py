"""forest_da.methods.pf.filter

Bootstrap particle filter step for one simulated day.

Sequence per day (driven by the ensemble simulator)
1) evolve_parameters: random walk of fitted parameters (before the model step)
2) model step produces predicted output for every member
3) analyse: weight by observation likelihood (log space), normalize,
   resample state and fitted parameters jointly, optionally rejuvenate

Days without observations pass through untouched (pure forecast step).
If no member has a finite likelihood, the day falls back to uniform weights
with a warning instead of aborting the run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from numpy.random import Generator

from forest_da.core.config import ProjectConfig
from forest_da.core.constants import COL_VARIABLE
from forest_da.core.errors import ConfigurationError, NumericInstability
from forest_da.methods.pf.likelihood import LikelihoodParams, log_likelihood
from forest_da.methods.pf.rejuvenate import RejuvenationParams, rejuvenate
from forest_da.methods.pf.resample import ResamplingConfig, resample_jointly
from forest_da.util.stats import effective_sample_size, logsumexp, normalize_log_weights


@dataclass
class FilterStep:
    """Result of one analysis step.

    output/fitted are the (possibly resampled) arrays that continue the run;
    indices is None when no resampling took place.
    """
    output: np.ndarray
    fitted: np.ndarray
    weights: np.ndarray
    ess: float
    indices: Optional[np.ndarray] = None
    assimilated: bool = False
    degenerate: bool = False
    n_obs: int = 0


def uniform_weights(n: int) -> np.ndarray:
    return np.full(n, 1.0 / n)


class ParticleFilter:
    """Random-walk parameter evolution plus likelihood weighting and resampling."""

    def __init__(
        self,
        fitted_names: Sequence[str],
        random_walk_sd: Dict[str, float],
        likelihood: Optional[LikelihoodParams] = None,
        resampling: Optional[ResamplingConfig] = None,
        rejuvenation: Optional[RejuvenationParams] = None,
    ):
        self.fitted_names = tuple(fitted_names)
        missing = [n for n in self.fitted_names if random_walk_sd.get(n) is None]
        if missing:
            raise ConfigurationError(f"Missing random-walk sd for fitted parameter(s): {', '.join(missing)}")
        self.random_walk_sd = np.array([float(random_walk_sd[n]) for n in self.fitted_names], dtype=float)
        if np.any(self.random_walk_sd < 0):
            raise ConfigurationError("Random-walk sd must be >= 0")
        self.likelihood = likelihood or LikelihoodParams()
        self.resampling = resampling or ResamplingConfig()
        self.rejuvenation = rejuvenation or RejuvenationParams()

    @classmethod
    def from_config(cls, cfg: ProjectConfig) -> "ParticleFilter":
        return cls(
            fitted_names=cfg.fitted_names,
            random_walk_sd={name: fp.sd for name, fp in cfg.fitted.items()},
            likelihood=cfg.likelihood,
            resampling=cfg.resampling,
            rejuvenation=cfg.rejuvenation,
        )

    def evolve_parameters(self, fitted: np.ndarray, rng: Generator) -> np.ndarray:
        """Independent Gaussian random walk per member and fitted parameter."""
        fitted = np.asarray(fitted, dtype=float)
        if fitted.shape[1] == 0 or not np.any(self.random_walk_sd > 0):
            return fitted.copy()
        step = rng.normal(0.0, 1.0, size=fitted.shape) * self.random_walk_sd[None, :]
        return fitted + step

    def _normalize(self, logw: np.ndarray) -> np.ndarray:
        lse = logsumexp(logw)
        if not np.isfinite(lse):
            raise NumericInstability(f"Weight normalizer is not finite (log-sum={lse})")
        w = normalize_log_weights(logw)
        if not np.all(np.isfinite(w)) or not np.isclose(w.sum(), 1.0):
            raise NumericInstability("Normalized weights are not a valid distribution")
        return w

    def analyse(
        self,
        date: datetime | pd.Timestamp,
        output: np.ndarray,
        fitted: np.ndarray,
        weights: np.ndarray,
        obs_rows: Optional[pd.DataFrame],
        rng: Generator,
    ) -> FilterStep:
        """Assimilate the observations of one day into the predicted ensemble.

        Parameters
        ----------
        date : datetime-like
            Simulated day (used for logging only).
        output : ndarray
            Predicted model output [members, 12].
        fitted : ndarray
            Fitted parameter values [members, n_fitted] used for this day.
        weights : ndarray
            Prior normalized weights [members].
        obs_rows : DataFrame or None
            Observations available for this day.
        rng : numpy.random.Generator
            Generator for the resampling draw and rejuvenation.
        """
        n = output.shape[0]
        if obs_rows is None or obs_rows.empty:
            return FilterStep(output=output, fitted=fitted, weights=weights, ess=effective_sample_size(weights))

        logL = log_likelihood(output, obs_rows, self.likelihood)
        logL = np.where(np.isnan(logL), -np.inf, logL)
        with np.errstate(divide="ignore"):
            logw = np.log(np.asarray(weights, dtype=float)) + logL
        channels = ",".join(sorted(set(obs_rows[COL_VARIABLE].astype(str))))
        day = pd.Timestamp(date).strftime("%Y-%m-%d")

        try:
            w = self._normalize(logw)
        except NumericInstability as exc:
            logger.warning(
                "Degenerate weights | date={} channels={} -> uniform weights, no resampling ({})",
                day,
                channels,
                exc,
            )
            return FilterStep(
                output=output,
                fitted=fitted,
                weights=uniform_weights(n),
                ess=float(n),
                degenerate=True,
                n_obs=len(obs_rows),
            )

        ess = effective_sample_size(w)
        if not self.resampling.should_resample(ess, n):
            logger.info(
                "Assimilation | date={} channels={} ESS={:.1f} >= thr={:.1f} (weights carried, no resampling)",
                day,
                channels,
                ess,
                self.resampling.threshold_abs(n),
            )
            return FilterStep(output=output, fitted=fitted, weights=w, ess=ess, assimilated=True, n_obs=len(obs_rows))

        idx, (new_output, new_fitted) = resample_jointly(rng, w, [output, fitted], self.resampling.algorithm)
        new_fitted = rejuvenate(new_fitted, self.fitted_names, self.rejuvenation, rng)
        logger.info(
            "Assimilation | date={} channels={} N={} ESS={:.1f} unique={}/{} ({})",
            day,
            channels,
            n,
            ess,
            len(np.unique(idx)),
            n,
            self.resampling.algorithm,
        )
        return FilterStep(
            output=new_output,
            fitted=new_fitted,
            weights=uniform_weights(n),
            ess=ess,
            indices=idx,
            assimilated=True,
            n_obs=len(obs_rows),
        )
