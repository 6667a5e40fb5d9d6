"""forest_da.io.checkpoint

Analysis checkpoint persisted at the end of every forecast-analysis run and
read at the start of the next one.

Layout (one directory per run reference date)
  <root>/analysis_YYYYMMDD/
    states.csv      date, member, leaf_carbon, wood_carbon, soil_organic_matter
    parameters.csv  date, member, <fitted parameter columns>
    weights.csv     date, member, weight
    manifest.json   dates, pools, fitted names, member count, format version

Behavior
- Writes go to a hidden temp directory next to the target and are committed
  by rename; a failed run never leaves a partial checkpoint behind.
- Floats are written with the shortest round-trip repr and read back with
  float_precision="round_trip", so arrays round-trip exactly.
- seed_at(date) is a keyed lookup that raises CheckpointMismatch when the
  date is absent or duplicated.
"""

from __future__ import annotations

import json
import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from loguru import logger
from numpy.random import Generator

from forest_da.core.config import ProjectConfig
from forest_da.core.constants import (
    POOLS,
    CHECKPOINT_PREFIX,
    CKPT_STATES,
    CKPT_PARAMETERS,
    CKPT_WEIGHTS,
    CKPT_MANIFEST,
    CKPT_FORMAT_VERSION,
    COL_DATE,
    COL_MEMBER,
    COL_WEIGHT,
)
from forest_da.core.errors import CheckpointMismatch
from forest_da.io.paths import checkpoint_dir_for
from forest_da.util.stats import sample_clamped_normal


@dataclass
class AnalysisSeed:
    """Initial conditions for a run, taken from one checkpoint day."""
    date: pd.Timestamp
    state: np.ndarray      # [members, 3]
    fitted: np.ndarray     # [members, n_fitted]
    fitted_names: tuple
    weights: np.ndarray    # [members]
    bootstrapped: bool = False


@dataclass
class AnalysisCheckpoint:
    reference_date: pd.Timestamp
    dates: pd.DatetimeIndex
    states: np.ndarray     # [days, members, 3]
    fitted: np.ndarray     # [days, members, n_fitted]
    fitted_names: tuple
    weights: np.ndarray    # [days, members]

    @property
    def n_members(self) -> int:
        return int(self.states.shape[1])

    def seed_at(self, date) -> AnalysisSeed:
        day = pd.Timestamp(date).normalize()
        hits = np.flatnonzero(self.dates == day)
        if hits.size == 0:
            raise CheckpointMismatch(
                f"{day.date()} not in checkpoint dates "
                f"({self.dates.min().date() if len(self.dates) else '-'} .. "
                f"{self.dates.max().date() if len(self.dates) else '-'})"
            )
        if hits.size > 1:
            raise CheckpointMismatch(f"{day.date()} appears {hits.size} times in the checkpoint date index")
        i = int(hits[0])
        return AnalysisSeed(
            date=day,
            state=self.states[i].copy(),
            fitted=self.fitted[i].copy(),
            fitted_names=self.fitted_names,
            weights=self.weights[i].copy(),
        )


def bootstrap_seed(cfg: ProjectConfig, start_date, rng: Generator) -> AnalysisSeed:
    """Seed drawn from configured initial conditions with uniform weights."""
    n = cfg.ensemble_size
    state = np.column_stack([
        sample_clamped_normal(rng, cfg.initial_conditions[p].mean, cfg.initial_conditions[p].sd, n)
        for p in POOLS
    ])
    names = cfg.fitted_names
    fitted = (
        np.column_stack([np.full(n, cfg.fitted[name].initial) for name in names])
        if names else np.empty((n, 0))
    )
    return AnalysisSeed(
        date=pd.Timestamp(start_date).normalize(),
        state=state,
        fitted=fitted,
        fitted_names=names,
        weights=np.full(n, 1.0 / n),
        bootstrapped=True,
    )


# ---- Serialization ---------------------------------------------------------

def _long_frame(dates: pd.DatetimeIndex, values: np.ndarray, columns: list[str]) -> pd.DataFrame:
    """[days, members, k] -> rows (date, member, columns...)."""
    days, members = values.shape[0], values.shape[1]
    flat = values.reshape(days * members, values.shape[2])
    df = pd.DataFrame(flat, columns=columns)
    df.insert(0, COL_MEMBER, np.tile(np.arange(members), days))
    df.insert(0, COL_DATE, np.repeat(dates.strftime("%Y-%m-%d").to_numpy(), members))
    return df


def _read_long(path: Path, columns: list[str], n_days: int, n_members: int) -> np.ndarray:
    df = pd.read_csv(path, float_precision="round_trip")
    missing = {COL_DATE, COL_MEMBER, *columns} - set(df.columns)
    if missing:
        raise ValueError(f"{path.name}: missing column(s) {', '.join(sorted(missing))}")
    if len(df) != n_days * n_members:
        raise ValueError(f"{path.name}: expected {n_days * n_members} rows, found {len(df)}")
    return df[columns].to_numpy(dtype=float).reshape(n_days, n_members, len(columns))


def save_checkpoint(cp: AnalysisCheckpoint, root: Path | str) -> Path:
    """Atomically write a checkpoint under ``root``; returns its directory."""
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    target = checkpoint_dir_for(root, cp.reference_date)
    tmp = root / f".{target.name}.tmp-{uuid.uuid4().hex[:8]}"
    tmp.mkdir(parents=True)
    backup = None
    try:
        _long_frame(cp.dates, cp.states, list(POOLS)).to_csv(tmp / CKPT_STATES, index=False)
        _long_frame(cp.dates, cp.fitted, list(cp.fitted_names)).to_csv(tmp / CKPT_PARAMETERS, index=False)
        _long_frame(cp.dates, cp.weights[..., None], [COL_WEIGHT]).to_csv(tmp / CKPT_WEIGHTS, index=False)
        manifest = {
            "format_version": CKPT_FORMAT_VERSION,
            "reference_date": cp.reference_date.strftime("%Y-%m-%d"),
            "dates": [d.strftime("%Y-%m-%d") for d in cp.dates],
            "n_members": cp.n_members,
            "pools": list(POOLS),
            "fitted_names": list(cp.fitted_names),
            "created_utc": datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ"),
        }
        (tmp / CKPT_MANIFEST).write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        # Commit: move an existing checkpoint for the same day aside, rename
        # the new one into place, then drop the old copy.
        if target.exists():
            backup = root / f".{target.name}.old-{uuid.uuid4().hex[:8]}"
            os.replace(target, backup)
        os.replace(tmp, target)
        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        if backup is not None and not target.exists():
            os.replace(backup, target)
            logger.warning("Checkpoint commit failed; restored previous {}", target.name)
        raise
    logger.info("Wrote checkpoint: {} ({} day(s) x {} member(s))", target, len(cp.dates), cp.n_members)
    return target


def load_checkpoint(path: Path | str) -> AnalysisCheckpoint:
    """Read a checkpoint directory written by save_checkpoint."""
    path = Path(path)
    manifest = json.loads((path / CKPT_MANIFEST).read_text(encoding="utf-8"))
    if int(manifest.get("format_version", 0)) != CKPT_FORMAT_VERSION:
        raise ValueError(f"Unsupported checkpoint format in {path}: {manifest.get('format_version')}")
    if list(manifest.get("pools", [])) != list(POOLS):
        raise ValueError(f"Checkpoint pools {manifest.get('pools')} do not match {list(POOLS)}")
    dates = pd.DatetimeIndex(pd.to_datetime(manifest["dates"]))
    n_members = int(manifest["n_members"])
    names = tuple(manifest.get("fitted_names", []))
    n_days = len(dates)

    states = _read_long(path / CKPT_STATES, list(POOLS), n_days, n_members)
    fitted = (
        _read_long(path / CKPT_PARAMETERS, list(names), n_days, n_members)
        if names else np.empty((n_days, n_members, 0))
    )
    weights = _read_long(path / CKPT_WEIGHTS, [COL_WEIGHT], n_days, n_members)[..., 0]
    return AnalysisCheckpoint(
        reference_date=pd.Timestamp(manifest["reference_date"]),
        dates=dates,
        states=states,
        fitted=fitted,
        fitted_names=names,
        weights=weights,
    )


def list_checkpoints(root: Path | str) -> list[tuple[pd.Timestamp, Path]]:
    """Committed checkpoints under root as (reference date, path), oldest first."""
    root = Path(root)
    if not root.is_dir():
        return []
    out: list[tuple[pd.Timestamp, Path]] = []
    for p in root.glob(f"{CHECKPOINT_PREFIX}*"):
        if not p.is_dir() or not (p / CKPT_MANIFEST).is_file():
            continue
        try:
            day = pd.Timestamp(datetime.strptime(p.name[len(CHECKPOINT_PREFIX):], "%Y%m%d"))
        except ValueError:
            continue
        out.append((day, p))
    out.sort(key=lambda t: t[0])
    return out


def checkpoints_on_or_before(root: Path | str, on_or_before=None) -> list[tuple[pd.Timestamp, Path]]:
    """Checkpoints with reference date <= on_or_before (if given), newest first."""
    limit = pd.Timestamp(on_or_before).normalize() if on_or_before is not None else None
    return [(day, p) for day, p in reversed(list_checkpoints(root)) if limit is None or day <= limit]


def find_latest_checkpoint(root: Path | str, on_or_before=None) -> Optional[Path]:
    """Most recent checkpoint with reference date <= on_or_before (if given)."""
    cands = checkpoints_on_or_before(root, on_or_before)
    return cands[0][1] if cands else None
