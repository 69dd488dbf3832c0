"""
Set up and manage logging with ``loguru``.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

import sys
import os
from loguru import logger

from tracer_pool_models.config import get_config
from tracer_pool_models.path import LOGFILEPATH


__all__ = [
    'get_logging_status',
    'initialize_logging',
    'enable_console_logging',
    'disable_console_logging',
    'enable_logfile_logging',
    'disable_logfile_logging'
]


_handler_ids = {'console': None, 'logfile': None}


def get_logging_status():
    """Return dict like ``{'console': 'enabled', 'logfile': 'disabled'}``."""
    return {
        sink: 'disabled' if handler_id is None else 'enabled'
        for sink, handler_id in _handler_ids.items()
    }


def initialize_logging():
    """Add or remove log handlers according to the ``[log]`` config."""

    config = get_config()['log']
    actions = {
        'console': {
            'enabled': enable_console_logging,
            'disabled': disable_console_logging,
            'default': lambda: None # keep loguru's default handler
        },
        'logfile': {
            'enabled': enable_logfile_logging,
            'disabled': disable_logfile_logging
        }
    }

    for sink, choices in actions.items():
        choice = config[sink].strip().lower()
        try:
            action = choices[choice]
        except KeyError:
            raise ValueError(
                f'Bad [log] {sink} configuration "{choice}",'
                f' expected one of {list(choices)}'
            ) from None
        action()


def _remove_default_handler():
    try:
        logger.remove(0)
    except ValueError:
        pass # already removed before


def enable_console_logging():
    _remove_default_handler()
    logger.debug('enabling console logging ...')

    if _handler_ids['console'] is not None:
        logger.info('console logging already enabled')
        return

    _handler_ids['console'] = logger.add(
        sys.stderr,
        level='INFO',
        format="<level>{message}</level>",
        colorize=True
    )
    logger.success('console logging enabled')


def disable_console_logging():
    _remove_default_handler()
    _remove_handler('console')


def enable_logfile_logging():
    logger.debug('enabling logfile logging ...')

    if _handler_ids['logfile'] is not None:
        logger.info('logfile logging already enabled')
        return

    config = get_config()['log']

    _handler_ids['logfile'] = logger.add(
        str(LOGFILEPATH),
        level='DEBUG',
        format="{time:YYYY-MM-DD HH:mm:ss} | {name} | {level} :: {message}",
        opener=lambda file, flags: os.open(file, flags, 0o600),
        backtrace=True, # for when logger.exception is used
        enqueue=True, # for compatibility with multiprocessing
        rotation=config['logfile_rotation'],
        retention=int(config['logfile_retention'])
    )
    logger.success('logfile logging enabled')


def disable_logfile_logging():
    _remove_handler('logfile')


def _remove_handler(sink):
    logger.debug(f'disabling {sink} logging ...')
    if _handler_ids[sink] is None:
        logger.info(f'{sink} logging already disabled')
    else:
        logger.remove(_handler_ids[sink])
        _handler_ids[sink] = None
        logger.success(f'{sink} logging disabled')
