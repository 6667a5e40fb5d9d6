import numpy as np
import pandas as pd
import pytest

from conftest import driver_frame, hourly_driver_frame
from forest_da.core.errors import ConfigurationError, MissingDriverCoverage
from forest_da.model.drivers import (
    assemble_drivers,
    assign_driver_members,
    constant_drivers,
    normalize_driver_table,
    read_driver_table,
)


TODAY = pd.Timestamp("2024-06-10")
WINDOW = pd.date_range("2024-06-07", "2024-06-13", freq="D")


def test_historical_before_today_forecast_from_today():
    hist = driver_frame(pd.date_range("2024-06-01", "2024-06-20"), temp=1.0, par=100.0)
    fcst = driver_frame(pd.date_range("2024-06-10", "2024-06-20"), temp=9.0, par=300.0, members=3)
    d = assemble_drivers(WINDOW, 4, historical=hist, forecast=fcst, today=TODAY, assignment="cycle")

    past = d.dates < TODAY
    np.testing.assert_array_equal(d.temp[past], 1.0)
    np.testing.assert_array_equal(d.temp[~past], 9.0)
    np.testing.assert_array_equal(d.par[~past], 300.0)
    np.testing.assert_array_equal(d.doy[:, 0], WINDOW.dayofyear.to_numpy(dtype=float))


def test_each_particle_keeps_its_weather_member():
    fcst = driver_frame(pd.date_range("2024-06-01", "2024-06-20"), temp=9.0, members=3, spread=1.0)
    d = assemble_drivers(WINDOW, 5, historical=None, forecast=fcst, today=TODAY, assignment="cycle")
    for t in range(d.n_days):
        np.testing.assert_array_equal(d.temp[t], [9.0, 10.0, 11.0, 9.0, 10.0])


def test_single_member_historical_feed_is_shared():
    hist = driver_frame(pd.date_range("2024-06-01", "2024-06-20"), temp=2.0)
    fcst = driver_frame(pd.date_range("2024-06-10", "2024-06-20"), temp=9.0, members=3, spread=1.0)
    d = assemble_drivers(WINDOW, 3, historical=hist, forecast=fcst, today=TODAY, assignment="cycle")
    np.testing.assert_array_equal(d.temp[0], [2.0, 2.0, 2.0])
    np.testing.assert_array_equal(d.temp[-1], [9.0, 10.0, 11.0])


def test_falls_back_to_the_other_feed():
    hist = driver_frame(pd.date_range("2024-06-01", "2024-06-20"), temp=1.0)
    fcst = driver_frame(pd.date_range("2024-06-12", "2024-06-20"), temp=9.0)
    d = assemble_drivers(WINDOW, 2, historical=hist, forecast=fcst, today=TODAY, assignment="cycle")
    np.testing.assert_array_equal(d.temp[WINDOW.get_loc(TODAY)], 1.0)
    np.testing.assert_array_equal(d.temp[-1], 9.0)


def test_gap_in_both_feeds_is_fatal():
    days = pd.date_range("2024-06-01", "2024-06-20")
    hist = driver_frame(days[days != pd.Timestamp("2024-06-08")], temp=1.0)
    fcst = driver_frame(pd.date_range("2024-06-10", "2024-06-20"), temp=9.0)
    with pytest.raises(MissingDriverCoverage) as info:
        assemble_drivers(WINDOW, 2, historical=hist, forecast=fcst, today=TODAY, assignment="cycle")
    assert info.value.missing_dates == [pd.Timestamp("2024-06-08")]
    assert "2024-06-08" in str(info.value)


def test_missing_single_variable_counts_as_gap():
    hist = driver_frame(pd.date_range("2024-06-01", "2024-06-20"))
    hist = hist[~((hist["variable"] == "PAR") & (hist["datetime"] == pd.Timestamp("2024-06-11")))]
    with pytest.raises(MissingDriverCoverage):
        assemble_drivers(WINDOW, 1, historical=hist, forecast=None, today=TODAY, assignment="cycle")


def test_random_assignment_draws_from_available_members(rng):
    ids = assign_driver_members([3, 5, 7], 200, rng, "random")
    assert set(ids) == {3, 5, 7}
    with pytest.raises(ConfigurationError):
        assign_driver_members([3, 5, 7], 4, None, "random")
    with pytest.raises(ConfigurationError):
        assign_driver_members([], 4, rng, "cycle")


def test_driver_arrays_are_read_only():
    d = constant_drivers(WINDOW, 2, temp=5.0, par=140.0)
    with pytest.raises(ValueError):
        d.temp[0, 0] = 1.0
    step = d.at(3)
    assert step.par.shape == (2,)


def test_sub_daily_rows_collapse_to_daily_means(tmp_path):
    df = pd.DataFrame({
        "datetime": ["2024-06-01T06:00:00Z", "2024-06-01T18:00:00Z", "2024-06-01T12:00:00Z", "2024-06-02T00:00:00Z"],
        "variable": ["temp", "temp", "PAR", "air_pressure"],
        "prediction": [4.0, 8.0, 200.0, 1013.0],
    })
    out = normalize_driver_table(df)
    temp = out[out["variable"] == "temp"]
    assert len(temp) == 1
    assert temp["prediction"].iloc[0] == pytest.approx(6.0)
    assert temp["parameter"].iloc[0] == 0
    assert set(out["variable"]) == {"temp", "PAR"}

    path = tmp_path / "met.csv"
    df.to_csv(path, index=False)
    pd.testing.assert_frame_equal(read_driver_table(path), out)


def test_driver_table_requires_prediction_column():
    with pytest.raises(ConfigurationError):
        normalize_driver_table(pd.DataFrame({"datetime": ["2024-06-01"], "variable": ["temp"]}))


def test_hourly_feed_is_aggregated_before_assembly():
    hist = hourly_driver_frame("2024-06-01", "2024-06-20", par=250.0)
    fcst = driver_frame(pd.date_range("2024-06-10", "2024-06-20"), temp=9.0, par=300.0, members=2, spread=1.0)
    d = assemble_drivers(WINDOW, 2, historical=hist, forecast=fcst, today=TODAY, assignment="cycle")

    past = d.dates < TODAY
    np.testing.assert_allclose(d.temp[past], 11.5)
    np.testing.assert_allclose(d.par[past], 250.0)
    np.testing.assert_array_equal(d.temp[-1], [9.0, 10.0])
