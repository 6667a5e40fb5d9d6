import gzip

import numpy as np
import pandas as pd
import pytest

from forest_da.core.config import PublishConfig
from forest_da.core.errors import ConfigurationError
from forest_da.io.observations import ObservationTable, read_observations
from forest_da.io.publish import SUBMISSION_COLUMNS, submission_filename, to_submission, write_submission
from forest_da.model.drivers import constant_drivers
from forest_da.model.simulate import simulate


def _obs_frame():
    return pd.DataFrame({
        "datetime": ["2024-06-01T00:00:00Z", "2024-06-01T00:00:00Z", "2024-06-03T00:00:00Z", "2024-06-04T00:00:00Z", "2024-06-05T00:00:00Z"],
        "variable": ["wood", "lai", "nee", "lai", "lai"],
        "observation": [141.0, 2.5, -0.01, np.nan, 2.7],
    })


def test_observation_table_cleans_and_indexes_by_day():
    obs = ObservationTable(_obs_frame())
    assert len(obs) == 4  # NaN observation dropped
    assert obs.has_observations("2024-06-01")
    assert not obs.has_observations("2024-06-04")
    assert list(obs.rows_at("2024-06-01")["variable"]) == ["lai", "wood"]
    assert obs.rows_at("2024-06-02").empty
    assert list(obs.dates_with_observations().strftime("%Y-%m-%d")) == ["2024-06-01", "2024-06-03", "2024-06-05"]


def test_observation_window_and_dense_view():
    obs = ObservationTable(_obs_frame())
    win = obs.window("2024-06-02", "2024-06-05")
    assert len(win) == 2
    dense = obs.to_dense(pd.date_range("2024-06-01", periods=3), variables=("lai", "wood"))
    assert dense.shape == (3, 2)
    assert dense[0].tolist() == [2.5, 141.0]
    assert np.isnan(dense[1]).all()


def test_observation_table_rejects_bad_input():
    bad = _obs_frame()
    bad.loc[0, "variable"] = "snow_depth"
    with pytest.raises(ConfigurationError):
        ObservationTable(bad)
    with pytest.raises(ConfigurationError):
        ObservationTable(_obs_frame().drop(columns=["observation"]))


def test_read_observations_with_sd_column(tmp_path):
    df = _obs_frame()
    df["sd"] = 0.2
    path = tmp_path / "targets.csv"
    df.to_csv(path, index=False)
    obs = read_observations(path)
    assert "sd" in obs.frame.columns
    assert len(obs) == 4


def test_submission_table(zero_noise_params, initial_state, rng):
    dates = pd.date_range("2024-06-10", periods=4, freq="D")
    res = simulate(initial_state(2), zero_noise_params(2), constant_drivers(dates, 2, temp=5.0, par=140.0), rng=rng)
    publish = PublishConfig()
    sub = to_submission(res.to_frame(), site_id="BART", publish=publish, reference_date=dates[0])

    assert list(sub.columns) == SUBMISSION_COLUMNS
    assert set(sub["variable"]) == {"nee", "lai"}
    # seed-day fluxes are never computed and are not published
    assert len(sub) == 3 * 2 * 2
    assert sub["datetime"].min() == "2024-06-11T00:00:00Z"
    assert (sub["reference_datetime"] == "2024-06-10T00:00:00Z").all()
    assert (sub["family"] == "ensemble").all()
    assert (sub["site_id"] == "BART").all()


def test_write_submission(tmp_path):
    publish = PublishConfig(model_id="m1", project_id="p1")
    assert submission_filename(publish, "2024-06-10") == "p1-2024-06-10-m1.csv.gz"
    df = pd.DataFrame({c: ["x"] for c in SUBMISSION_COLUMNS})
    path = write_submission(df, tmp_path / "out", publish, "2024-06-10")
    with gzip.open(path, "rt") as f:
        assert f.readline().strip() == ",".join(SUBMISSION_COLUMNS)
