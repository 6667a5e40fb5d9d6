"""
Shared pytest fixtures and helpers for the forest_da test suite.

This module provides:
- Deterministic random generators
- Builders for zero-noise parameters, constant drivers and long-format feeds
- A temporary project directory with a small project.yml
"""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from forest_da.core.config import ModelParams, config_from_dict
from forest_da.model.forest import EnsembleState, ParameterSet


ZERO_NOISE = dict(sigma_leaf=0.0, sigma_wood=0.0, sigma_soil=0.0)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def zero_noise_params():
    def _make(n_members=1, **overrides):
        kw = dict(ZERO_NOISE)
        kw.update(overrides)
        return ParameterSet.from_params(ModelParams(**kw), n_members)
    return _make


@pytest.fixture
def initial_state():
    def _make(n_members=1, leaf=5.0, wood=140.0, som=140.0):
        return EnsembleState.from_pools(
            np.full(n_members, leaf), np.full(n_members, wood), np.full(n_members, som)
        )
    return _make


def driver_frame(dates, *, temp=5.0, par=140.0, members=1, spread=0.0):
    """Long-format driver feed (datetime, variable, prediction, parameter)."""
    rows = []
    for d in pd.DatetimeIndex(dates):
        for m in range(members):
            rows.append({"datetime": d, "variable": "temp", "prediction": temp + spread * m, "parameter": m})
            rows.append({"datetime": d, "variable": "PAR", "prediction": par + spread * m, "parameter": m})
    return pd.DataFrame(rows)


def hourly_driver_frame(first, last, *, par=140.0):
    """Single-member hourly feed without a parameter column; temp equals the hour of day."""
    hours = pd.date_range(pd.Timestamp(first), pd.Timestamp(last) + pd.Timedelta(hours=23), freq="h")
    temp = pd.DataFrame({"datetime": hours, "variable": "temp", "prediction": hours.hour.astype(float)})
    light = pd.DataFrame({"datetime": hours, "variable": "PAR", "prediction": par})
    return pd.concat([temp, light], ignore_index=True)


PROJECT_YML = """\
site:
  site_id: TEST
model:
  parameters:
    sigma_leaf: 0.05
    sigma_wood: 0.5
    sigma_soil: 0.5
  initial_conditions:
    leaf_carbon: {mean: 5.0, sd: 0.3}
    wood_carbon: {mean: 140.0, sd: 3.0}
    soil_organic_matter: {mean: 140.0, sd: 3.0}
data_assimilation:
  ensemble_size: 20
  random_seed: 7
  fitted_parameters:
    alpha: {initial: 0.02, sd: 0.001}
    Rbasal: {initial: 0.002, sd: 0.00005}
  likelihood:
    obs_sd: {lai: 0.1, wood: 1.0, som: 1.0, nee: 0.01}
cycle:
  look_back: 5
  horizon: 3
  driver_assignment: cycle
"""


@pytest.fixture
def project_dir(tmp_path) -> Path:
    p = tmp_path / "project"
    p.mkdir()
    (p / "project.yml").write_text(PROJECT_YML, encoding="utf-8")
    return p


@pytest.fixture
def small_config(tmp_path):
    def _make(**blocks):
        return config_from_dict(blocks, project_dir=tmp_path)
    return _make
