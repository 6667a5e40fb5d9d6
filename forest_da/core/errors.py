"""Error taxonomy for the forecast-analysis engine.

Fatal errors (configuration, driver coverage) abort a run before anything is
written. Recoverable ones (numeric instability, checkpoint mismatch) are
handled where they occur and surfaced as warnings.
"""


class ForestDAError(Exception):
    """Base class for all forest_da errors."""


class ConfigurationError(ForestDAError, ValueError):
    """Invalid parameters, mismatched ensemble sizes or missing settings."""


class MissingDriverCoverage(ForestDAError, ValueError):
    """Driver series does not cover every simulated day."""

    def __init__(self, missing_dates):
        self.missing_dates = list(missing_dates)
        shown = ", ".join(str(d)[:10] for d in self.missing_dates[:5])
        more = "" if len(self.missing_dates) <= 5 else f" (+{len(self.missing_dates) - 5} more)"
        super().__init__(f"No driver coverage for {len(self.missing_dates)} day(s): {shown}{more}")


class CheckpointMismatch(ForestDAError, LookupError):
    """Requested seed date is not (uniquely) present in a checkpoint."""


class NumericInstability(ForestDAError, ArithmeticError):
    """Particle weights could not be normalized."""
