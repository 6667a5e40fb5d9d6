from __future__ import annotations
"""
forest_da.util.stats

Numerical kernels shared by the model, the particle filter and the checkpoint
bootstrap. Everything here is vectorized over ensemble members and takes an
explicit numpy Generator where randomness is involved.

Contents
- Non-negative Gaussian draws for initial pools and process noise
- Log-space weighting: Gaussian log-density, log-sum-exp, weight normalization
- Effective sample size and index draws for resampling
"""

import numpy as np
from numpy.random import Generator


def sample_clamped_normal(rng: Generator, mean: float, sd: float, n: int) -> np.ndarray:
    """Draw n values ~ N(mean, sd^2) clamped at zero; sd=0 returns constants."""
    if sd == 0:
        return np.full(n, float(mean))
    return np.maximum(rng.normal(mean, sd, size=n), 0.0)


def gaussian_noise(rng: Generator, mean: np.ndarray, sd: np.ndarray | float) -> np.ndarray:
    """Elementwise N(mean, sd^2); entries with sd == 0 are returned untouched."""
    mean = np.asarray(mean, dtype=float)
    sd = np.broadcast_to(np.asarray(sd, dtype=float), mean.shape)
    if not np.any(sd > 0):
        return mean.copy()
    draws = rng.normal(mean, np.where(sd > 0, sd, 1.0))
    return np.where(sd > 0, draws, mean)


# ---- Log-space weighting ---------------------------------------------------

def gaussian_logpdf(residual: np.ndarray, sigma: np.ndarray | float) -> np.ndarray:
    """log N(residual | 0, sigma^2), broadcasting residual against sigma."""
    z = np.asarray(residual, dtype=float) / np.asarray(sigma, dtype=float)
    return -0.5 * z ** 2 - np.log(sigma) - 0.5 * np.log(2.0 * np.pi)


def logsumexp(a: np.ndarray) -> float:
    """log(sum(exp(a))) without overflow; -inf (or nan) passes straight through."""
    values = np.asarray(a, dtype=float).ravel()
    peak = values.max()
    if not np.isfinite(peak):
        return float(peak)
    return float(peak + np.log(np.exp(values - peak).sum()))


def normalize_log_weights(logw: np.ndarray) -> np.ndarray:
    """Map log-weights onto the probability simplex.

    Callers check that logsumexp(logw) is finite first; members at -inf get
    weight zero.
    """
    logw = np.asarray(logw, dtype=float)
    weights = np.exp(logw - logsumexp(logw))
    return weights / weights.sum()


def effective_sample_size(w: np.ndarray) -> float:
    """1 / sum(w^2): N for uniform weights, 1 when one member holds all mass."""
    sq = float(np.square(np.asarray(w, dtype=float)).sum())
    return 1.0 / sq if sq > 0 else 0.0


# ---- Resampling index draws ------------------------------------------------

def systematic_resample(rng: Generator, weights: np.ndarray, n: int | None = None) -> np.ndarray:
    """Indices drawn with one uniform offset and n evenly spaced pointers.

    A member with weight w is selected floor(n*w) or ceil(n*w) times, which
    keeps the resampling noise lower than independent draws.
    """
    weights = np.asarray(weights, dtype=float)
    count = weights.size if n is None else int(n)
    edges = np.cumsum(weights)
    edges[-1] = 1.0  # round-off must not leave the last bin short
    pointers = (np.arange(count) + rng.random()) / count
    return np.searchsorted(edges, pointers, side="left").astype(int)


def multinomial_resample(rng: Generator, weights: np.ndarray, n: int | None = None) -> np.ndarray:
    """n independent draws with probability proportional to weight."""
    weights = np.asarray(weights, dtype=float)
    count = weights.size if n is None else int(n)
    return rng.choice(weights.size, size=count, replace=True, p=weights / weights.sum()).astype(int)
