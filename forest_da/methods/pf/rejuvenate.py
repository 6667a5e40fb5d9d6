"""forest_da.methods.pf.rejuvenate

Optional jitter of fitted parameters after resampling.

Resampling duplicates particles, so after a few assimilation days many
members carry identical parameter values (degeneracy). Adding small Gaussian
noise to the resampled fitted parameters spreads the duplicates again. It is
off unless a positive sigma is configured under
data_assimilation.rejuvenation.sigma.<parameter>.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Sequence

import numpy as np
from numpy.random import Generator


@dataclass
class RejuvenationParams:
    sigma: Dict[str, float] = field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return any(s > 0 for s in self.sigma.values())


def rejuvenate(
    fitted: np.ndarray,
    names: Sequence[str],
    params: RejuvenationParams,
    rng: Generator,
) -> np.ndarray:
    """Return fitted values [members, n_fitted] with per-parameter jitter added."""
    if not params.enabled:
        return fitted
    out = np.array(fitted, dtype=float, copy=True)
    for j, name in enumerate(names):
        s = float(params.sigma.get(name, 0.0))
        if s > 0:
            out[:, j] = rng.normal(out[:, j], s)
    return out
