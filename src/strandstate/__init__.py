# -*- coding: utf-8 -*-

__version__ = "0.1.0"
from . import core, exceptions, intervals, counting, filtering, estimation, hmm, reports
from .core import *
from .exceptions import *
from .intervals import *
from .counting import *
from .filtering import *
from .estimation import *
from .hmm import *
from .reports import *
