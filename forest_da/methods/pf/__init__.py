"""
Bootstrap particle filter: likelihood weighting, joint resampling and
optional rejuvenation of fitted parameters.
"""

__all__ = ["filter", "likelihood", "resample", "rejuvenate"]
