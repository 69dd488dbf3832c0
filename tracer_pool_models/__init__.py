"""
``tracer_pool_models``

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

from loguru import logger
from tracer_pool_models.logging import initialize_logging

logger.disable('tracer_pool_models')
initialize_logging()
logger.enable('tracer_pool_models') # enable log by default

del logger, initialize_logging

from tracer_pool_models.errors import *
from tracer_pool_models.utils import CancellationFlag
from tracer_pool_models.source_curve import *
from tracer_pool_models.forcing import *
from tracer_pool_models.builder import *
from tracer_pool_models.integrator import *
from tracer_pool_models.isotopes import *
from tracer_pool_models.derived import *
from tracer_pool_models.ages import *
from tracer_pool_models.stochastic import *
from tracer_pool_models.estimation import *
from tracer_pool_models.model_data import *
from tracer_pool_models.scenarios import *
