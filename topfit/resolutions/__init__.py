from . import base
from .base import *

from . import gaussian
from .gaussian import *

from . import met
from .met import *

#: Resolution function classes by the name used in detector layouts
FORMS = dict(
    gauss=gaussian.GaussianResolution,
    double_gauss=gaussian.DoubleGaussianResolution,
    met=met.MissingETResolution)

__all__ = base.__all__ + gaussian.__all__ + met.__all__ + ['FORMS']
