from __future__ import annotations
"""
forest_da.core.config

Purpose
- Build a validated project configuration for the forecast-analysis cycle by
  layering project.yml and caller overrides on top of built-in defaults.

Key Behaviors
- Shallow (top-level block) merge with precedence: overrides > project.
- Every block is optional; missing keys fall back to dataclass defaults.
- Validation is eager: invalid values raise ConfigurationError before any
  simulation starts.

Inputs
- Path to a project directory containing project.yml (or project.yaml).
- Optional dict of overrides (e.g. from CLI flags).

Outputs
- ProjectConfig dataclass consumed by the simulator, the particle filter and
  the cycle orchestrator.
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import ruamel.yaml

from forest_da.core.constants import (
    POOLS,
    POOL_LEAF,
    POOL_WOOD,
    POOL_SOM,
    OBS_VARIABLES,
    SITE_BLOCK,
    SITE_ID,
    MODEL_BLOCK,
    MODEL_PARAMETERS,
    MODEL_INITIAL_CONDITIONS,
    IC_MEAN,
    IC_SD,
    DA_BLOCK,
    DA_ENSEMBLE_SIZE,
    DA_RANDOM_SEED,
    DA_FITTED_PARAMETERS,
    FIT_INITIAL,
    FIT_SD,
    LIKELIHOOD_BLOCK,
    LIK_OBS_SD,
    RESAMPLING_BLOCK,
    RESAMPLING_ALGORITHM,
    RESAMPLING_ESS_THRESHOLD,
    REJUVENATION_BLOCK,
    REJ_SIGMA,
    CYCLE_BLOCK,
    CYCLE_LOOK_BACK,
    CYCLE_HORIZON,
    CYCLE_DRIVER_ASSIGNMENT,
    PUBLISH_BLOCK,
    PUBLISH_MODEL_ID,
    PUBLISH_PROJECT_ID,
    PUBLISH_VARIABLES,
)
from forest_da.core.errors import ConfigurationError
from forest_da.io.paths import find_project_yaml
from forest_da.methods.pf.likelihood import LikelihoodParams
from forest_da.methods.pf.rejuvenate import RejuvenationParams
from forest_da.methods.pf.resample import ResamplingConfig, ALGORITHMS


_yaml = ruamel.yaml.YAML(typ="safe")


@dataclass
class ModelParams:
    """Scalar process parameters shared by all ensemble members.

    Rates are per day; pools in Mg C/ha. Defaults describe a temperate
    deciduous forest with a two-year leaf lifespan and ~18 year wood turnover.
    """
    alpha: float = 0.02
    SLA: float = 4.74
    leaf_frac: float = 0.315
    Ra_frac: float = 0.5
    Rbasal: float = 0.002
    Q10: float = 2.1
    litterfall_rate: float = 1.0 / (2.0 * 365.0)
    litterfall_start: float = 200.0
    litterfall_length: float = 70.0
    mortality: float = 0.00015
    sigma_leaf: float = 0.1
    sigma_wood: float = 1.0
    sigma_soil: float = 1.0

    def validate(self) -> None:
        if not self.litterfall_length > 0:
            raise ConfigurationError(f"litterfall_length must be > 0 (got {self.litterfall_length})")
        for name in ("sigma_leaf", "sigma_wood", "sigma_soil"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0 (got {getattr(self, name)})")
        for name in ("leaf_frac", "Ra_frac"):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1] (got {v})")


MODEL_PARAM_NAMES = tuple(f.name for f in fields(ModelParams))


@dataclass
class InitialCondition:
    mean: float
    sd: float = 0.0


def _default_initial_conditions() -> Dict[str, InitialCondition]:
    return {
        POOL_LEAF: InitialCondition(mean=5.0, sd=0.5),
        POOL_WOOD: InitialCondition(mean=140.0, sd=5.0),
        POOL_SOM: InitialCondition(mean=140.0, sd=5.0),
    }


@dataclass
class FittedParameter:
    """A parameter evolved by random walk and resampled with the state."""
    name: str
    initial: float
    sd: float


def _default_fitted() -> Dict[str, FittedParameter]:
    return {
        "alpha": FittedParameter(name="alpha", initial=0.02, sd=0.005),
        "Rbasal": FittedParameter(name="Rbasal", initial=0.002, sd=0.0001),
    }


@dataclass
class PublishConfig:
    model_id: str = "forest_da_pf"
    project_id: str = "neon4cast"
    variables: tuple = ("nee", "lai")


@dataclass
class ProjectConfig:
    project_dir: Path
    site_id: str = "site"
    model: ModelParams = field(default_factory=ModelParams)
    initial_conditions: Dict[str, InitialCondition] = field(default_factory=_default_initial_conditions)
    ensemble_size: int = 100
    random_seed: Optional[int] = None
    fitted: Dict[str, FittedParameter] = field(default_factory=_default_fitted)
    likelihood: LikelihoodParams = field(default_factory=LikelihoodParams)
    resampling: ResamplingConfig = field(default_factory=ResamplingConfig)
    rejuvenation: RejuvenationParams = field(default_factory=RejuvenationParams)
    look_back: int = 30
    horizon: int = 30
    driver_assignment: str = "random"
    publish: PublishConfig = field(default_factory=PublishConfig)

    @property
    def fitted_names(self) -> tuple:
        return tuple(self.fitted.keys())

    def validate(self) -> None:
        self.model.validate()
        if self.ensemble_size < 1:
            raise ConfigurationError(f"ensemble_size must be >= 1 (got {self.ensemble_size})")
        if self.look_back < 1:
            raise ConfigurationError(f"look_back must be >= 1 day (got {self.look_back})")
        if self.horizon < 0:
            raise ConfigurationError(f"horizon must be >= 0 days (got {self.horizon})")
        if self.driver_assignment not in ("random", "cycle"):
            raise ConfigurationError(f"driver_assignment must be 'random' or 'cycle' (got {self.driver_assignment!r})")
        missing = [p for p in POOLS if p not in self.initial_conditions]
        if missing:
            raise ConfigurationError(f"Missing initial condition(s): {', '.join(missing)}")
        for pool, ic in self.initial_conditions.items():
            if ic.sd < 0:
                raise ConfigurationError(f"Initial condition sd for {pool} must be >= 0")
        for name, fp in self.fitted.items():
            if name not in MODEL_PARAM_NAMES:
                raise ConfigurationError(f"Fitted parameter '{name}' is not a model parameter")
            if fp.sd is None or fp.sd < 0:
                raise ConfigurationError(f"Fitted parameter '{name}' needs a random-walk sd >= 0")
        self.likelihood.validate()
        if self.resampling.algorithm not in ALGORITHMS:
            raise ConfigurationError(
                f"Unknown resampling algorithm '{self.resampling.algorithm}' (use one of {', '.join(ALGORITHMS)})"
            )
        for name, s in self.rejuvenation.sigma.items():
            if name not in self.fitted:
                raise ConfigurationError(f"Rejuvenation sigma given for non-fitted parameter '{name}'")
            if s < 0:
                raise ConfigurationError(f"Rejuvenation sigma for '{name}' must be >= 0")


def read_yaml_file(path: Path) -> dict:
    """Read a YAML file with the safe loader; an empty file yields {}."""
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            return _yaml.load(f) or {}
    except ruamel.yaml.YAMLError as exc:
        raise ConfigurationError(f"Could not parse YAML from {path}: {exc}") from exc


def merge_configs(*layers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Shallow top-level merge; later layers take precedence.

    For dict-valued blocks the merge is one level deep (block keys of later
    layers replace those of earlier ones); scalars are replaced wholesale.
    """
    merged: Dict[str, Any] = {}
    keys = set()
    for d in layers:
        keys.update((d or {}).keys())
    for k in keys:
        values = [(d or {}).get(k) for d in layers]
        if any(isinstance(v, dict) for v in values):
            merged[k] = {}
            for v in values:
                if isinstance(v, dict):
                    merged[k].update(v)
        else:
            chosen = None
            for v in values:
                if v is not None:
                    chosen = v
            merged[k] = chosen
    return merged


def _as_float(block: str, key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{block}.{key} must be numeric (got {value!r})") from exc


def _parse_model_params(raw: Dict[str, Any]) -> ModelParams:
    unknown = sorted(set(raw) - set(MODEL_PARAM_NAMES))
    if unknown:
        raise ConfigurationError(f"Unknown model parameter(s): {', '.join(unknown)}")
    values = {k: _as_float(f"{MODEL_BLOCK}.{MODEL_PARAMETERS}", k, v) for k, v in raw.items()}
    return replace(ModelParams(), **values)


def _parse_initial_conditions(raw: Dict[str, Any]) -> Dict[str, InitialCondition]:
    out = _default_initial_conditions()
    for pool, entry in raw.items():
        if pool not in POOLS:
            raise ConfigurationError(f"Unknown pool in initial_conditions: {pool}")
        if isinstance(entry, dict):
            mean = _as_float(MODEL_INITIAL_CONDITIONS, f"{pool}.{IC_MEAN}", entry.get(IC_MEAN, out[pool].mean))
            sd = _as_float(MODEL_INITIAL_CONDITIONS, f"{pool}.{IC_SD}", entry.get(IC_SD, 0.0))
        else:
            mean, sd = _as_float(MODEL_INITIAL_CONDITIONS, pool, entry), 0.0
        out[pool] = InitialCondition(mean=mean, sd=sd)
    return out


def _parse_fitted(raw: Dict[str, Any], model: ModelParams) -> Dict[str, FittedParameter]:
    out: Dict[str, FittedParameter] = {}
    for name, entry in raw.items():
        entry = entry or {}
        if FIT_SD not in entry:
            raise ConfigurationError(f"Fitted parameter '{name}' is missing its random-walk '{FIT_SD}'")
        initial = entry.get(FIT_INITIAL, getattr(model, name, None))
        if initial is None:
            raise ConfigurationError(f"Fitted parameter '{name}' has no initial value")
        out[name] = FittedParameter(
            name=name,
            initial=_as_float(DA_FITTED_PARAMETERS, f"{name}.{FIT_INITIAL}", initial),
            sd=_as_float(DA_FITTED_PARAMETERS, f"{name}.{FIT_SD}", entry[FIT_SD]),
        )
    return out


def _parse_likelihood(raw: Dict[str, Any]) -> LikelihoodParams:
    p = LikelihoodParams()
    obs_sd = raw.get(LIK_OBS_SD) or {}
    for var, sd in obs_sd.items():
        if var not in OBS_VARIABLES:
            raise ConfigurationError(f"Unknown observation variable in likelihood: {var}")
        setattr(p, var, _as_float(f"{LIKELIHOOD_BLOCK}.{LIK_OBS_SD}", var, sd))
    return p


def _parse_resampling(raw: Dict[str, Any]) -> ResamplingConfig:
    thr = raw.get(RESAMPLING_ESS_THRESHOLD)
    return ResamplingConfig(
        algorithm=str(raw.get(RESAMPLING_ALGORITHM, "systematic")),
        ess_threshold=(_as_float(RESAMPLING_BLOCK, RESAMPLING_ESS_THRESHOLD, thr) if thr is not None else 0.0),
    )


def config_from_dict(cfg: Dict[str, Any], project_dir: Path | str = ".") -> ProjectConfig:
    """Parse an already merged config dict into a validated ProjectConfig."""
    site = cfg.get(SITE_BLOCK) or {}
    model_block = cfg.get(MODEL_BLOCK) or {}
    da = cfg.get(DA_BLOCK) or {}
    cyc = cfg.get(CYCLE_BLOCK) or {}
    pub = cfg.get(PUBLISH_BLOCK) or {}

    model = _parse_model_params(model_block.get(MODEL_PARAMETERS) or {})
    seed = da.get(DA_RANDOM_SEED)
    seed = int(seed) if seed is not None else None

    fitted_raw = da.get(DA_FITTED_PARAMETERS)
    fitted = _default_fitted() if fitted_raw is None else _parse_fitted(fitted_raw, model)

    rej_raw = (da.get(REJUVENATION_BLOCK) or {}).get(REJ_SIGMA) or {}
    rejuvenation = RejuvenationParams(
        sigma={k: _as_float(f"{REJUVENATION_BLOCK}.{REJ_SIGMA}", k, v) for k, v in rej_raw.items()}
    )

    publish = PublishConfig(
        model_id=str(pub.get(PUBLISH_MODEL_ID, PublishConfig.model_id)),
        project_id=str(pub.get(PUBLISH_PROJECT_ID, PublishConfig.project_id)),
        variables=tuple(pub.get(PUBLISH_VARIABLES) or PublishConfig.variables),
    )

    out = ProjectConfig(
        project_dir=Path(project_dir),
        site_id=str(site.get(SITE_ID, "site")),
        model=model,
        initial_conditions=_parse_initial_conditions(model_block.get(MODEL_INITIAL_CONDITIONS) or {}),
        ensemble_size=int(da.get(DA_ENSEMBLE_SIZE, 100)),
        random_seed=seed,
        fitted=fitted,
        likelihood=_parse_likelihood(da.get(LIKELIHOOD_BLOCK) or {}),
        resampling=_parse_resampling(da.get(RESAMPLING_BLOCK) or {}),
        rejuvenation=rejuvenation,
        look_back=int(cyc.get(CYCLE_LOOK_BACK, 30)),
        horizon=int(cyc.get(CYCLE_HORIZON, 30)),
        driver_assignment=str(cyc.get(CYCLE_DRIVER_ASSIGNMENT, "random")),
        publish=publish,
    )
    out.validate()
    return out


def load_project_config(
    project_dir: Path | str,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProjectConfig:
    """
    Read project.yml from ``project_dir``, apply overrides and validate.

    Steps
    1) Locate and read project.yml
    2) Merge overrides on top (shallow, per top-level block)
    3) Parse into dataclasses with defaults for anything omitted
    4) Validate (raises ConfigurationError)
    """
    project_dir = Path(project_dir)
    proj_cfg = read_yaml_file(find_project_yaml(project_dir))
    cfg = merge_configs(proj_cfg, overrides)
    return config_from_dict(cfg, project_dir=project_dir)
