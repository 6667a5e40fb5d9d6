"""forest_da.pipeline.cycle

Daily forecast-analysis cycle with strict, atomic behavior:

- Reload: newest usable checkpoint on/before "today"; seed the run from the
  day matching the window start (today - look_back). Unreadable or
  incompatible checkpoints are skipped in favor of older ones; when none
  holds the start date the run bootstraps from configured initial conditions.
- Look-back: simulate start..today with the particle filter, assimilating
  every day that has observations (including ones that arrived late).
- Forecast: continue today+1..today+horizon with no assimilation.
- Persist: analysis slice (start..today) as the new checkpoint and the
  forecast table (dates >= today). Both are staged and committed only after
  the whole run succeeded; configuration and driver coverage errors abort
  before anything is written.

Overlapping invocations are not coordinated here; schedule one run at a time.
"""

from __future__ import annotations

import argparse
import os
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from loguru import logger
from numpy.random import Generator

from forest_da.core.config import ProjectConfig, load_project_config
from forest_da.core.constants import (
    LOGURU_FORMAT,
    POOLS,
    COL_REFERENCE_DATETIME,
    CYCLE_BLOCK,
    CYCLE_LOOK_BACK,
    CYCLE_HORIZON,
    DA_BLOCK,
    DA_RANDOM_SEED,
)
from forest_da.core.errors import CheckpointMismatch
from forest_da.io.checkpoint import (
    AnalysisCheckpoint,
    AnalysisSeed,
    bootstrap_seed,
    checkpoints_on_or_before,
    load_checkpoint,
    save_checkpoint,
)
from forest_da.io.observations import ObservationTable, read_observations
from forest_da.io.paths import (
    checkpoint_root,
    forecast_csv_path,
    log_file_path,
    resolve_in_project,
)
from forest_da.io.publish import to_submission, write_submission
from forest_da.methods.pf.filter import ParticleFilter
from forest_da.model.drivers import assemble_drivers, read_driver_table
from forest_da.model.forest import EnsembleState, ParameterSet
from forest_da.model.simulate import SimulationResult, simulate


@dataclass
class CycleResult:
    today: pd.Timestamp
    dates: pd.DatetimeIndex
    seed: AnalysisSeed
    simulation: SimulationResult
    checkpoint: AnalysisCheckpoint
    forecast: pd.DataFrame
    checkpoint_path: Optional[Path] = None
    forecast_path: Optional[Path] = None


def window_dates(today, look_back: int, horizon: int) -> pd.DatetimeIndex:
    """Daily dates from today - look_back through today + horizon (inclusive)."""
    today = pd.Timestamp(today).normalize()
    return pd.date_range(today - pd.Timedelta(days=look_back), today + pd.Timedelta(days=horizon), freq="D")


def _seed_from(path: Path, cfg: ProjectConfig, start: pd.Timestamp) -> AnalysisSeed:
    """Seed at ``start`` from one checkpoint; any reason it cannot serve is a CheckpointMismatch."""
    try:
        cp = load_checkpoint(path)
    except (OSError, ValueError, KeyError) as exc:
        raise CheckpointMismatch(f"unreadable ({type(exc).__name__}: {exc})") from exc
    if cp.n_members != cfg.ensemble_size:
        raise CheckpointMismatch(
            f"checkpoint has {cp.n_members} members, configuration expects {cfg.ensemble_size}"
        )
    if tuple(cp.fitted_names) != cfg.fitted_names:
        raise CheckpointMismatch(
            f"checkpoint fits {list(cp.fitted_names)}, configuration fits {list(cfg.fitted_names)}"
        )
    return cp.seed_at(start)


def reload_seed(cfg: ProjectConfig, root: Path, start, today, rng: Generator) -> AnalysisSeed:
    """Seed for the window start from the newest usable checkpoint, or a bootstrap seed.

    Checkpoints are tried newest first; one that cannot be read or does not
    match the configuration is skipped with a warning. Checkpoints older than
    ``start`` cannot hold it and are not opened.
    """
    start = pd.Timestamp(start).normalize()
    candidates = checkpoints_on_or_before(root, on_or_before=today)
    if not candidates:
        logger.warning("No checkpoint under {} -> bootstrapping from initial conditions", root)
        return bootstrap_seed(cfg, start, rng)
    for day, path in candidates:
        if day < start:
            break
        try:
            seed = _seed_from(path, cfg, start)
        except CheckpointMismatch as exc:
            logger.warning("Checkpoint {} unusable for seed {}: {}", path.name, start.date(), exc)
            continue
        logger.info("Seeded from checkpoint {} at {}", path.name, start.date())
        return seed
    logger.warning("No usable checkpoint for {} -> bootstrapping from initial conditions", start.date())
    return bootstrap_seed(cfg, start, rng)


def _stage_csv(df: pd.DataFrame, final: Path) -> Path:
    final.parent.mkdir(parents=True, exist_ok=True)
    tmp = final.parent / f".{final.name}.tmp-{uuid.uuid4().hex[:8]}"
    df.to_csv(tmp, index=False)
    return tmp


def run_cycle(
    cfg: ProjectConfig,
    *,
    today,
    observations: Optional[ObservationTable],
    historical: Optional[pd.DataFrame],
    forecast: Optional[pd.DataFrame],
    rng: Optional[Generator] = None,
    write: bool = True,
) -> CycleResult:
    """Run one reload -> look-back assimilation -> forecast -> persist cycle."""
    today = pd.Timestamp(today).normalize()
    dates = window_dates(today, cfg.look_back, cfg.horizon)
    rng = rng if rng is not None else np.random.default_rng(cfg.random_seed)
    logger.info(
        "== Forecast-analysis cycle {} | window {} .. {} (look_back={} horizon={}) N={} ==",
        today.date(),
        dates[0].date(),
        dates[-1].date(),
        cfg.look_back,
        cfg.horizon,
        cfg.ensemble_size,
    )

    # Fatal checks first: parameters and driver coverage
    params = ParameterSet.from_params(cfg.model, cfg.ensemble_size)
    drivers = assemble_drivers(
        dates,
        cfg.ensemble_size,
        historical=historical,
        forecast=forecast,
        today=today,
        rng=rng,
        assignment=cfg.driver_assignment,
    )
    pf = ParticleFilter.from_config(cfg)

    root = checkpoint_root(cfg.project_dir)
    seed = reload_seed(cfg, root, dates[0], today, rng)

    obs = (observations or ObservationTable()).window(dates[0], today)
    n_obs_days = len(obs.dates_with_observations())
    logger.info("Observations in look-back window: {} row(s) on {} day(s)", len(obs), n_obs_days)

    sim = simulate(
        EnsembleState(seed.state),
        params,
        drivers,
        rng=rng,
        fitted_names=cfg.fitted_names,
        initial_fitted=seed.fitted,
        particle_filter=pf,
        observations=obs,
        initial_weights=seed.weights,
        assimilate_until=today,
    )

    analysis = sim.slice(end=today)
    checkpoint = AnalysisCheckpoint(
        reference_date=today,
        dates=analysis.dates,
        states=analysis.trajectory[:, :, : len(POOLS)].copy(),
        fitted=analysis.fitted,
        fitted_names=analysis.fitted_names,
        weights=analysis.weights,
    )
    forecast_df = sim.slice(start=today).to_frame()
    forecast_df[COL_REFERENCE_DATETIME] = today
    logger.info(
        "Cycle done | assimilated days={} degenerate days={} final ESS={:.1f}",
        int(sim.assimilated.sum()),
        int(sim.degenerate.sum()),
        float(analysis.ess[-1]),
    )

    result = CycleResult(
        today=today,
        dates=dates,
        seed=seed,
        simulation=sim,
        checkpoint=checkpoint,
        forecast=forecast_df,
    )
    if not write:
        return result

    # Forecast first, checkpoint last; if the checkpoint cannot be committed
    # the forecast file is rolled back to whatever was there before.
    fc_path = forecast_csv_path(cfg.project_dir, today)
    tmp = _stage_csv(forecast_df, fc_path)
    previous = None
    try:
        if fc_path.exists():
            backup = fc_path.parent / f".{fc_path.name}.old-{uuid.uuid4().hex[:8]}"
            os.replace(fc_path, backup)
            previous = backup
        os.replace(tmp, fc_path)
        result.checkpoint_path = save_checkpoint(checkpoint, root)
    except BaseException:
        tmp.unlink(missing_ok=True)
        if previous is not None:
            os.replace(previous, fc_path)
        else:
            fc_path.unlink(missing_ok=True)
        raise
    if previous is not None:
        previous.unlink(missing_ok=True)
    result.forecast_path = fc_path
    logger.info("Wrote forecast: {}", fc_path)
    return result


def _setup_logger(project_dir: Path, log_level: str) -> None:
    """Configure Loguru sinks for console and project file log."""
    logger.remove()
    logger.add(sys.stdout, level=log_level.upper(), colorize=True, enqueue=True, format=LOGURU_FORMAT)
    log_file = log_file_path(project_dir)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger.add(log_file, level=log_level.upper(), colorize=False, enqueue=True, format=LOGURU_FORMAT)


def cli_main(argv: Iterable[str] | None = None) -> int:
    """CLI: run one forecast-analysis cycle.

    Example
    -------
    forest-da-cycle \
      --project-dir ./projects/bart \
      --today 2024-06-01 \
      --observations obs/targets.csv \
      --historical-drivers met/historical.csv \
      --forecast-drivers met/forecast.csv
    """
    p = argparse.ArgumentParser(prog="forest-da-cycle", description="Daily particle-filter forecast-analysis cycle")
    p.add_argument("--project-dir", required=True, type=Path)
    p.add_argument("--today", required=True, type=str, help="YYYY-MM-DD reference date")
    p.add_argument("--observations", type=Path, help="Long-format observation CSV (datetime, variable, observation[, sd])")
    p.add_argument("--historical-drivers", type=Path, help="Long-format historical weather CSV")
    p.add_argument("--forecast-drivers", type=Path, help="Long-format forecast weather CSV")
    p.add_argument("--look-back", type=int, help="Override cycle.look_back (days)")
    p.add_argument("--horizon", type=int, help="Override cycle.horizon (days)")
    p.add_argument("--seed", type=int, help="Override data_assimilation.random_seed")
    p.add_argument("--submission-dir", type=Path, help="Also write a challenge-formatted forecast here")
    p.add_argument("--dry-run", action="store_true", help="Run without writing checkpoint or forecast")
    p.add_argument("--log-level", default="INFO")
    args = p.parse_args(list(argv) if argv is not None else None)

    project_dir = Path(args.project_dir)
    _setup_logger(project_dir, args.log_level)

    overrides: dict = {}
    if args.look_back is not None:
        overrides.setdefault(CYCLE_BLOCK, {})[CYCLE_LOOK_BACK] = int(args.look_back)
    if args.horizon is not None:
        overrides.setdefault(CYCLE_BLOCK, {})[CYCLE_HORIZON] = int(args.horizon)
    if args.seed is not None:
        overrides.setdefault(DA_BLOCK, {})[DA_RANDOM_SEED] = int(args.seed)

    def _resolve(path: Optional[Path]) -> Optional[Path]:
        return resolve_in_project(project_dir, path) if path is not None else None

    try:
        cfg = load_project_config(project_dir, overrides)
        today = pd.Timestamp(args.today)
        obs_path = _resolve(args.observations)
        hist_path = _resolve(args.historical_drivers)
        fcst_path = _resolve(args.forecast_drivers)
        result = run_cycle(
            cfg,
            today=today,
            observations=read_observations(obs_path) if obs_path else None,
            historical=read_driver_table(hist_path) if hist_path else None,
            forecast=read_driver_table(fcst_path) if fcst_path else None,
            write=not args.dry_run,
        )
        if args.submission_dir is not None:
            sub = to_submission(result.forecast, site_id=cfg.site_id, publish=cfg.publish, reference_date=today)
            out = write_submission(sub, _resolve(args.submission_dir), cfg.publish, today)
            logger.info("Wrote submission: {} ({} rows)", out, len(sub))
    except Exception as e:
        logger.error(f"Forecast-analysis cycle failed: {e}")
        return 1
    finally:
        logger.complete()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(cli_main())
