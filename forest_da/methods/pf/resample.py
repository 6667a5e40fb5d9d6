"""forest_da.methods.pf.resample

Joint resampling of member-indexed arrays in proportion to normalized
weights.

Features
- Systematic (default) or multinomial index draws.
- One draw is applied to every array passed in (model output, fitted
  parameters, ...), so state/parameter pairs are never decoupled.
- ESS threshold: if 0, never skip (always resample); 0 < thr <= 1 is a
  ratio of N; thr > 1 is an absolute number of particles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.random import Generator

from forest_da.util.stats import multinomial_resample, systematic_resample


ALGORITHMS = ("systematic", "multinomial")


@dataclass(frozen=True)
class ResamplingConfig:
    algorithm: str = "systematic"
    ess_threshold: float = 0.0  # 0 -> always resample

    def threshold_abs(self, n: int) -> float:
        thr = float(self.ess_threshold or 0.0)
        if thr <= 0:
            return 0.0
        return thr if thr > 1.0 else thr * float(n)

    def should_resample(self, ess: float, n: int) -> bool:
        thr = self.threshold_abs(n)
        return not thr or ess < thr


def resample_indices(rng: Generator, weights: np.ndarray, algorithm: str = "systematic") -> np.ndarray:
    """Draw len(weights) particle indices with probability proportional to weight."""
    if algorithm == "systematic":
        return systematic_resample(rng, weights)
    if algorithm == "multinomial":
        return multinomial_resample(rng, weights)
    raise NotImplementedError(f"Resampling algorithm '{algorithm}' not implemented (use one of {', '.join(ALGORITHMS)})")


def resample_jointly(
    rng: Generator,
    weights: np.ndarray,
    arrays: Sequence[np.ndarray],
    algorithm: str = "systematic",
) -> tuple[np.ndarray, list[np.ndarray]]:
    """Resample several member-indexed arrays with a single index draw.

    Every array must have the ensemble on axis 0. Returns the drawn indices
    and the resampled copies in the order given.
    """
    w = np.asarray(weights, dtype=float)
    n = w.size
    for a in arrays:
        if np.shape(a)[0] != n:
            raise ValueError(f"Array with leading dimension {np.shape(a)[0]} does not match {n} weights")
    idx = resample_indices(rng, w, algorithm)
    return idx, [np.asarray(a)[idx].copy() for a in arrays]
