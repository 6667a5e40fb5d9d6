from __future__ import annotations
from datetime import date, datetime
from pathlib import Path
from typing import Union

from forest_da.core.constants import (
    CHECKPOINT_DIR_NAME,
    CHECKPOINT_PREFIX,
    FORECAST_DIR_NAME,
    FORECAST_PREFIX,
    LOG_DIR_NAME,
    LOG_FILE_NAME,
)

PathLike = Union[str, Path]

PROJECT_YAML_NAMES = ("project.yml", "project.yaml")


def find_project_yaml(project_dir: PathLike) -> Path:
    """First of project.yml / project.yaml present in project_dir."""
    candidates = [Path(project_dir) / name for name in PROJECT_YAML_NAMES]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise FileNotFoundError(f"No {' or '.join(PROJECT_YAML_NAMES)} in {project_dir}")


# ---- Project layout ---------------------------------------------------------

def checkpoint_root(project_dir: PathLike) -> Path:
    """<project_dir>/analysis holds one analysis_YYYYMMDD directory per run."""
    return Path(project_dir) / CHECKPOINT_DIR_NAME


def checkpoint_dir_for(root: PathLike, reference_date: date | datetime) -> Path:
    """Checkpoint directory name for a run reference date: analysis_YYYYMMDD."""
    return Path(root) / f"{CHECKPOINT_PREFIX}{reference_date:%Y%m%d}"


def forecast_dir(project_dir: PathLike) -> Path:
    return Path(project_dir) / FORECAST_DIR_NAME


def forecast_csv_path(project_dir: PathLike, reference_date: date | datetime) -> Path:
    """<project_dir>/forecasts/forecast_YYYYMMDD.csv"""
    return forecast_dir(project_dir) / f"{FORECAST_PREFIX}{reference_date:%Y%m%d}.csv"


def log_file_path(project_dir: PathLike) -> Path:
    return Path(project_dir) / LOG_DIR_NAME / LOG_FILE_NAME


def resolve_in_project(project_dir: PathLike, p: PathLike) -> Path:
    """CLI paths are taken relative to the project directory unless absolute."""
    p = Path(p)
    return p if p.is_absolute() else Path(project_dir) / p
