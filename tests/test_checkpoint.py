import json
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

import forest_da.io.checkpoint as ckpt
from forest_da.core.errors import CheckpointMismatch
from forest_da.io.checkpoint import (
    AnalysisCheckpoint,
    bootstrap_seed,
    checkpoints_on_or_before,
    find_latest_checkpoint,
    list_checkpoints,
    load_checkpoint,
    save_checkpoint,
)


def _checkpoint(reference="2024-06-10", days=3, members=4, names=("alpha", "Rbasal"), seed=0):
    rng = np.random.default_rng(seed)
    ref = pd.Timestamp(reference)
    dates = pd.date_range(ref - pd.Timedelta(days=days - 1), ref, freq="D")
    w = rng.random((days, members))
    return AnalysisCheckpoint(
        reference_date=ref,
        dates=dates,
        states=rng.normal(100.0, 30.0, size=(days, members, 3)) / 3.0,
        fitted=rng.normal(0.02, 0.005, size=(days, members, len(names))),
        fitted_names=tuple(names),
        weights=w / w.sum(axis=1, keepdims=True),
    )


def _assert_same(a, b):
    assert a.reference_date == b.reference_date
    assert list(a.dates) == list(b.dates)
    assert a.fitted_names == b.fitted_names
    np.testing.assert_array_equal(a.states, b.states)
    np.testing.assert_array_equal(a.fitted, b.fitted)
    np.testing.assert_array_equal(a.weights, b.weights)


def test_round_trip_is_exact(tmp_path):
    cp = _checkpoint()
    path = save_checkpoint(cp, tmp_path)
    assert path.name == "analysis_20240610"
    _assert_same(load_checkpoint(path), cp)


def test_round_trip_without_fitted_parameters(tmp_path):
    cp = _checkpoint(names=())
    loaded = load_checkpoint(save_checkpoint(cp, tmp_path))
    assert loaded.fitted.shape == (3, 4, 0)
    _assert_same(loaded, cp)


def test_seed_at_returns_a_copy_of_one_day(tmp_path):
    cp = _checkpoint()
    seed = cp.seed_at("2024-06-09")
    np.testing.assert_array_equal(seed.state, cp.states[1])
    np.testing.assert_array_equal(seed.weights, cp.weights[1])
    seed.state[:] = 0.0
    assert cp.states[1].min() != 0.0


def test_seed_at_missing_or_duplicated_date():
    cp = _checkpoint()
    with pytest.raises(CheckpointMismatch):
        cp.seed_at("2024-05-01")
    dup = _checkpoint()
    dup.dates = pd.DatetimeIndex(["2024-06-09", "2024-06-09", "2024-06-10"])
    with pytest.raises(CheckpointMismatch):
        dup.seed_at("2024-06-09")


def test_failed_write_keeps_previous_checkpoint(tmp_path, monkeypatch):
    first = _checkpoint(seed=1)
    path = save_checkpoint(first, tmp_path)

    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ckpt.json, "dumps", boom)
    with pytest.raises(RuntimeError):
        save_checkpoint(_checkpoint(seed=2), tmp_path)
    monkeypatch.undo()

    _assert_same(load_checkpoint(path), first)
    assert [p.name for p in tmp_path.iterdir()] == ["analysis_20240610"]


def test_failed_commit_restores_previous_checkpoint(tmp_path, monkeypatch):
    first = _checkpoint(seed=1)
    path = save_checkpoint(first, tmp_path)

    real_replace = ckpt.os.replace
    calls = []

    def flaky(src, dst):
        calls.append((src, dst))
        if len(calls) == 2:  # moving the new checkpoint into place
            raise OSError("rename failed")
        real_replace(src, dst)

    monkeypatch.setattr(ckpt.os, "replace", flaky)
    with pytest.raises(OSError):
        save_checkpoint(_checkpoint(seed=2), tmp_path)
    monkeypatch.undo()

    _assert_same(load_checkpoint(path), first)
    assert [p.name for p in tmp_path.iterdir()] == ["analysis_20240610"]


def test_manifest_records_utc_creation_time(tmp_path):
    path = save_checkpoint(_checkpoint(), tmp_path)
    manifest = json.loads((path / "manifest.json").read_text(encoding="utf-8"))
    created = datetime.strptime(manifest["created_utc"], "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    assert abs(datetime.now(timezone.utc) - created) < timedelta(hours=1)


def test_overwrite_same_reference_date(tmp_path):
    save_checkpoint(_checkpoint(seed=1), tmp_path)
    second = _checkpoint(seed=2)
    path = save_checkpoint(second, tmp_path)
    _assert_same(load_checkpoint(path), second)
    assert [p.name for p in tmp_path.iterdir()] == ["analysis_20240610"]


def test_manifest_contents(tmp_path):
    path = save_checkpoint(_checkpoint(), tmp_path)
    manifest = json.loads((path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["format_version"] == 1
    assert manifest["dates"] == ["2024-06-08", "2024-06-09", "2024-06-10"]
    assert manifest["n_members"] == 4
    assert manifest["fitted_names"] == ["alpha", "Rbasal"]


def test_unsupported_format_version(tmp_path):
    path = save_checkpoint(_checkpoint(), tmp_path)
    manifest = json.loads((path / "manifest.json").read_text(encoding="utf-8"))
    manifest["format_version"] = 99
    (path / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    with pytest.raises(ValueError):
        load_checkpoint(path)


def test_latest_checkpoint_on_or_before(tmp_path):
    assert find_latest_checkpoint(tmp_path / "missing") is None
    for ref in ("2024-06-08", "2024-06-10", "2024-06-12"):
        save_checkpoint(_checkpoint(reference=ref), tmp_path)
    (tmp_path / "analysis_garbage").mkdir()

    assert [d.strftime("%Y-%m-%d") for d, _ in list_checkpoints(tmp_path)] == ["2024-06-08", "2024-06-10", "2024-06-12"]
    assert find_latest_checkpoint(tmp_path).name == "analysis_20240612"
    assert find_latest_checkpoint(tmp_path, on_or_before="2024-06-11").name == "analysis_20240610"
    assert find_latest_checkpoint(tmp_path, on_or_before="2024-06-01") is None
    newest_first = checkpoints_on_or_before(tmp_path, on_or_before="2024-06-11")
    assert [p.name for _, p in newest_first] == ["analysis_20240610", "analysis_20240608"]


def test_bootstrap_seed_from_initial_conditions(small_config, rng):
    cfg = small_config(
        model={"initial_conditions": {"leaf_carbon": 5.0, "wood_carbon": 140.0, "soil_organic_matter": {"mean": 120.0}}},
        data_assimilation={"ensemble_size": 6},
    )
    seed = bootstrap_seed(cfg, "2024-06-01", rng)
    assert seed.bootstrapped
    assert seed.state.shape == (6, 3)
    np.testing.assert_array_equal(seed.state[:, 2], 120.0)
    np.testing.assert_array_equal(seed.fitted[:, 0], 0.02)
    np.testing.assert_allclose(seed.weights, 1 / 6)
    assert seed.fitted_names == ("alpha", "Rbasal")
