import topfit
export, __all__ = topfit.exporter()


@export
class ResolutionConfigError(ValueError):
    """Resolution functions or their lookup tables are misconfigured.

    Raised at construction time; the offending object must not be used.
    """
    pass


@export
class RegionOutOfRangeError(LookupError):
    """A detector region value lies beyond the last configured bin"""
    pass


@export
class KinematicsError(ValueError):
    """Fit parameters do not correspond to physical four-momenta"""
    pass
