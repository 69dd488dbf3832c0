"""
Get and set configurations in config files of ``tracer_pool_models``.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

from pathlib import Path
from configparser import ConfigParser
from loguru import logger


__all__ = [
    'ConfigFile',
    'DefaultConfigFile',
    'CustomConfigFile',
    'get_config',
    'print_config',
    'get_solver_options',
    'get_isotope_options',
    'get_estimation_options',
    'get_mcmc_options'
]


PACKAGEPATH = Path(__file__).resolve().parent


class ConfigFile:
    """Configuration file managed by :py:mod:`configparser`."""

    def __init__(self, path, readonly=False):
        self.path = Path(path).expanduser().resolve()
        self.readonly = readonly

    def exists(self):
        return self.path.exists()

    def read(self):
        if not self.exists():
            raise FileNotFoundError(f'No such config file: {self.path}')
        config = ConfigParser()
        config.read(self.path)
        return config

    def write(self, config):
        if self.readonly:
            raise PermissionError(f'Config file is read-only: {self.path}')
        with self.path.open('w') as config_file:
            config.write(config_file)

    def remove(self):
        if self.readonly:
            raise PermissionError(f'Config file is read-only: {self.path}')
        self.path.unlink()
        logger.debug(f'Removed config file: {self.path}')

    def __repr__(self):
        return self.__class__.__name__ + f'("{self.path}")'


class DefaultConfigFile(ConfigFile):
    """Default configuration file for the ``tracer_pool_models`` package."""

    def __init__(self):
        super().__init__(PACKAGEPATH / 'config_defaults.ini', readonly=True)


class CustomConfigFile(ConfigFile):
    """Custom configuration file for the ``tracer_pool_models`` package.
    
    Create and modify this file using functions :py:meth:`enable_log`,
    :py:meth:`disable_log`, :py:meth:`set_quiet`, :py:meth:`set_verbose`,
    and :py:meth:`set_...`.
    
    Calling :py:meth:`reset_defaults` removes this file.
    """

    def __init__(self):
        super().__init__(PACKAGEPATH / 'config.ini')


def get_config():
    """Get the current configurations of the ``tracer_pool_models`` package.
    Reads :py:class:`CustomConfigFile` if it exists,
    :py:class:`DefaultConfigFile` otherwise.
    
    Returns
    -------
    configparser.ConfigParser
    """
    try:
        return CustomConfigFile().read()
    except FileNotFoundError:
        return DefaultConfigFile().read()


def print_config(*, raw=False):
    config = get_config()
    print('')
    print(f'# Note: Paths are relative to "{PACKAGEPATH.parent}", unless absolute.')
    print('')
    for section in config.sections():
        print(f'[{section}]')
        for name, value in config.items(section, raw=raw):
            print(f'{name} = {value}')
        print('')


def _none_or(cast):
    def convert(value):
        value = value.strip()
        return None if value.lower() == 'none' else cast(value)
    return convert


def _get_section(section, converters):
    config = get_config()[section]
    return {name: convert(config[name]) for name, convert in converters.items()}


def get_solver_options():
    """Options of :py:func:`tracer_pool_models.integrator.integrate`."""
    return _get_section('solver', {
        'method': str.strip,
        'rtol': float,
        'atol': float,
        'max_step': float,
        'max_evaluations': int
    })

def get_isotope_options():
    return _get_section('isotope', {
        'half_life': float,
        'standard_ratio': float,
        'plausible_min': float,
        'plausible_max': float
    })

def get_estimation_options():
    return _get_section('estimation', {
        'max_nfev': int,
        'ftol': float,
        'xtol': float,
        'gtol': float
    })

def get_mcmc_options():
    return _get_section('mcmc', {
        'n_iter': int,
        'burn_in': int,
        'out_of_bounds': str.strip,
        'seed': _none_or(int)
    })


def reset_defaults():
    """Reset default configs by removing :py:class:`CustomConfigFile`."""
    logger.info('Resetting default configurations for tracer_pool_models ...')
    config_file = CustomConfigFile()
    if config_file.exists():
        config_file.remove()
        logger.success('Configurations reset to default.')
        _ask_to_restart_kernel()
    else:
        logger.info('Configurations already default.')


def set_log_filename(filename):
    filename = str(filename)
    if not filename.strip():
        raise ValueError(f'Cannot set log filename "{filename}"')
    _set_config('log', 'filename', filename)

def enable_log():
    _set_config('log', 'logfile', 'enabled')

def disable_log():
    _set_config('log', 'logfile', 'disabled')

def set_quiet():
    _set_config('log', 'console', 'disabled')

def set_verbose():
    _set_config('log', 'console', 'enabled')

def set_dump_path(path):
    _set_path('dump', path)

def set_solver_option(name, value):
    if name not in get_solver_options():
        raise KeyError(f'Unknown solver option "{name}"')
    _set_config('solver', name, str(value))


def _set_path(name, path):
    path = str(path)
    if not path.strip():
        raise ValueError(f'Cannot set path "{path}"')
    _set_config('path', name, path)


def _set_config(section, name, value):
    config = get_config()
    config[section][name] = value
    CustomConfigFile().write(config)
    logger.success(f'Set [{section}] {name} = {value}')
    _ask_to_restart_kernel()


ASK_TO_RESTART_KERNEL = True

def _ask_to_restart_kernel():
    if ASK_TO_RESTART_KERNEL:
        logger.warning('Please restart the kernel for changes to take effect.')


def main():

    import sys
    import argparse

    import tracer_pool_models.logging
    from tracer_pool_models.path import DUMPPATH, LOGFILEPATH

    global ASK_TO_RESTART_KERNEL

    parser = argparse.ArgumentParser(
        prog='tracer-pool-config',
        description='Manage configurations for `tracer_pool_models` package.',
        epilog=''
    )
    parser.add_argument('-print', action='store_true',
        help='print configurations and exit')
    parser.add_argument('-reset', action='store_true',
        help='remove config.ini file and exit')
    parser.add_argument('-get-dump', action='store_true',
        help='print absolute path of the dataset dump and exit')
    parser.add_argument('-set-dump', metavar='DUMP',
        help='set path of the dataset dump')
    parser.add_argument('-log-status', action='store_true',
        help='print status of console and logfile logging and exit')
    parser.add_argument('-get-logfile', action='store_true',
        help='print absolute path of logfile and exit')
    parser.add_argument('-disable-log', action='store_true',
        help='disable logging to logfile')
    parser.add_argument('-enable-log', action='store_true',
        help='enable logging to logfile')
    parser.add_argument('-set-quiet', action='store_true',
        help='disable logging to console')
    parser.add_argument('-set-verbose', action='store_true',
        help='enable logging to console')
    parser.add_argument('-set-solver', nargs=2, metavar=('OPTION', 'VALUE'),
        help='set an option of the ODE solver, e.g. `-set-solver method BDF`')

    if len(sys.argv) == 1: # `tracer-pool-config` was run without arguments
        parser.print_help()
        return

    args = parser.parse_args()

    logger.disable('tracer_pool_models.logging')
    tracer_pool_models.logging.enable_console_logging()
    logger.enable('tracer_pool_models.logging')

    ASK_TO_RESTART_KERNEL = False

    if args.print:
        print_config()
    elif args.reset:
        reset_defaults()
    elif args.get_dump:
        print(DUMPPATH)
    elif args.log_status:
        status = get_config()['log']
        print('Logging to console is '+status['console'].strip().lower()+'.')
        print('Logging to logfile is '+status['logfile'].strip().lower()+'.')
    elif args.get_logfile:
        print(LOGFILEPATH)
    else:
        if args.set_dump:
            set_dump_path(args.set_dump)
        if args.set_solver:
            set_solver_option(*args.set_solver)
        if args.set_quiet:
            set_quiet()
        if args.set_verbose:
            set_verbose()
        if args.disable_log:
            disable_log()
        if args.enable_log:
            enable_log()

    ASK_TO_RESTART_KERNEL = True


if __name__ == '__main__':
    main()
