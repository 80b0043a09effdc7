__version__ = '0.1.0'

from .utils import *
from .exceptions import *

from . import resolutions
from .resolutions import *

from .kinematics import *
from .neutrino import *
from .detectors import *
from .permutations import *
from .flavor import *
from .likelihood import *
