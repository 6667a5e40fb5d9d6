# Carbon pools (state) and derived fluxes returned by the process model.
# Output arrays are always laid out as POOLS + FLUXES along the last axis.
POOL_LEAF = "leaf_carbon"
POOL_WOOD = "wood_carbon"
POOL_SOM = "soil_organic_matter"
POOLS = (POOL_LEAF, POOL_WOOD, POOL_SOM)

FLUX_LAI = "lai"
FLUX_GPP = "gpp"
FLUX_NEE = "nee"
FLUX_RA = "ra"
FLUX_NPP_WOOD = "npp_wood"
FLUX_NPP_LEAF = "npp_leaf"
FLUX_RH = "rh"
FLUX_LITTERFALL = "litterfall"
FLUX_MORTALITY = "mortality"
FLUXES = (
    FLUX_LAI,
    FLUX_GPP,
    FLUX_NEE,
    FLUX_RA,
    FLUX_NPP_WOOD,
    FLUX_NPP_LEAF,
    FLUX_RH,
    FLUX_LITTERFALL,
    FLUX_MORTALITY,
)
OUTPUT_VARIABLES = POOLS + FLUXES
OUTPUT_INDEX = {name: i for i, name in enumerate(OUTPUT_VARIABLES)}

# Observation channels and the model output each one is compared against
VAR_LAI = "lai"
VAR_WOOD = "wood"
VAR_SOM = "som"
VAR_NEE = "nee"
OBS_VARIABLES = (VAR_LAI, VAR_WOOD, VAR_SOM, VAR_NEE)
OBSERVATION_OPERATOR = {
    VAR_LAI: FLUX_LAI,
    VAR_WOOD: POOL_WOOD,
    VAR_SOM: POOL_SOM,
    VAR_NEE: FLUX_NEE,
}

# Driver variables (long-format driver feed schema)
DRIVER_TEMP = "temp"
DRIVER_PAR = "PAR"
DRIVER_VARIABLES = (DRIVER_TEMP, DRIVER_PAR)

# Long-format table columns shared by observation, driver and forecast tables
COL_DATETIME = "datetime"
COL_VARIABLE = "variable"
COL_OBSERVATION = "observation"
COL_PREDICTION = "prediction"
COL_PARAMETER = "parameter"
COL_SD = "sd"
COL_REFERENCE_DATETIME = "reference_datetime"

# Unit conversion: umol CO2/m2/s -> Mg C/ha/day
UMOL_TO_MGC_HA_DAY = 60 * 60 * 24 * 1e-6 * 12 * 1e-6 * 10000
# Leaf carbon (Mg/ha) times SLA (m2/kg) -> LAI needs Mg/ha -> kg/m2
LEAF_TO_LAI_FACTOR = 0.1

# project.yml blocks and keys
SITE_BLOCK = "site"
SITE_ID = "site_id"

MODEL_BLOCK = "model"
MODEL_PARAMETERS = "parameters"
MODEL_INITIAL_CONDITIONS = "initial_conditions"
IC_MEAN = "mean"
IC_SD = "sd"

DA_BLOCK = "data_assimilation"
DA_ENSEMBLE_SIZE = "ensemble_size"
DA_RANDOM_SEED = "random_seed"
DA_FITTED_PARAMETERS = "fitted_parameters"
FIT_INITIAL = "initial"
FIT_SD = "sd"

LIKELIHOOD_BLOCK = "likelihood"
LIK_OBS_SD = "obs_sd"

RESAMPLING_BLOCK = "resampling"
RESAMPLING_ALGORITHM = "algorithm"  # systematic|multinomial
RESAMPLING_ESS_THRESHOLD = "ess_threshold"

REJUVENATION_BLOCK = "rejuvenation"
REJ_SIGMA = "sigma"

CYCLE_BLOCK = "cycle"
CYCLE_LOOK_BACK = "look_back"
CYCLE_HORIZON = "horizon"
CYCLE_DRIVER_ASSIGNMENT = "driver_assignment"

PUBLISH_BLOCK = "publish"
PUBLISH_MODEL_ID = "model_id"
PUBLISH_PROJECT_ID = "project_id"
PUBLISH_VARIABLES = "variables"

# Project layout
CHECKPOINT_DIR_NAME = "analysis"
CHECKPOINT_PREFIX = "analysis_"
FORECAST_DIR_NAME = "forecasts"
FORECAST_PREFIX = "forecast_"
LOG_DIR_NAME = "logs"
LOG_FILE_NAME = "forest_da.log"

# Checkpoint artifacts
CKPT_STATES = "states.csv"
CKPT_PARAMETERS = "parameters.csv"
CKPT_WEIGHTS = "weights.csv"
CKPT_MANIFEST = "manifest.json"
CKPT_FORMAT_VERSION = 1

COL_MEMBER = "member"
COL_DATE = "date"
COL_WEIGHT = "weight"

# Logging format (green timestamp | level | message)
LOGURU_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}"
