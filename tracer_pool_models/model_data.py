"""
One scenario run of a pool model, with all its inputs and outputs as
lazily computed datasets.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

from configparser import ConfigParser
from pathlib import Path

import numpy as np
import pandas as pd

from tracer_pool_models.ages import DEFAULT_QUANTILES, age_distributions
from tracer_pool_models.builder import read_model_config
from tracer_pool_models.data import Data
from tracer_pool_models.derived import derive_output, ratio_to_delta
from tracer_pool_models.errors import InvalidConfiguration
from tracer_pool_models.estimation import Observations
from tracer_pool_models.integrator import integrate, spin_up
from tracer_pool_models.isotopes import IsotopeCoupler
from tracer_pool_models.path import DUMPPATH
from tracer_pool_models.source_curve import SourceCurve
from tracer_pool_models.stochastic import isotope_distribution
from tracer_pool_models.utils import as_time_grid


__all__ = ['PoolModelData']


class PoolModelData(Data):
    """
    Parameters
    ----------
    model : MatrixModel
    times : array_like
        Output time grid; the run starts at ``times[0]``
    coupler : IsotopeCoupler, optional
        Track isotopes; needed for signatures and the isotope distribution
    ages : array_like, optional
        Age axis of the age and transit-time distributions
    quantiles : sequence of float
        Quantiles reported in ``age_summary``
    observations : Observations, optional
        Needed for ``observed``, ``predicted`` and ``error``
    t_ref : float, optional
        Reference time of the steady state and of the age distributions.
        Default: ``times[0]``
    spinup : bool, default True
        Start the run in steady state at ``times[0]``; otherwise start
        from the initial state of the model
    n_bins : int, default 50
        Number of bins of the isotope distribution
    solver_options : dict, optional
    savedir, name, description
        See :py:class:`tracer_pool_models.data.Data`.
        Default `savedir`: ``DUMPPATH / name``
    """

    datasets = [
        'matrix', 'inputs', 'steady_state', 'raw_output', 'output',
        'age', 'transit_time', 'age_summary', 'isotope_distribution',
        'predicted', 'observed', 'error'
    ]
    predicted_columns = {'total_mass': 'mass', 'system_delta': 'delta'}

    def __init__(self, model, times, *, coupler=None, ages=None,
            quantiles=DEFAULT_QUANTILES, observations=None, t_ref=None,
            spinup=True, n_bins=50, solver_options=None,
            savedir=None, name='scenario', description=None, **kwargs):

        self.model = model
        self.times = as_time_grid(times)
        self.coupler = coupler
        self.ages = None if ages is None else as_time_grid(ages, 'ages')
        self.quantiles = quantiles
        self.observations = observations
        self.t_ref = self.times[0] if t_ref is None else float(t_ref)
        self.spinup = spinup
        self.n_bins = n_bins
        self.solver_options = dict(solver_options or {})

        if savedir is None:
            savedir = DUMPPATH / name
        if description is None:
            description = f'Scenario run of {model}'

        super().__init__(savedir, name, description, **kwargs)


    @classmethod
    def from_config(cls, path, **kwargs):
        """
        Scenario from a model configuration file with a ``[model]`` and
        ``[grid]`` section (see
        :py:func:`tracer_pool_models.builder.read_model_config`) and
        optional sections

        * ``[source]`` with `constant` (permil), or `file`,
          `time_column` and `value_column` of a CSV table,
          and optional `half_life`
        * ``[observations]`` with `file`, `time_column`, and
          `mass_column` and/or `delta_column` of a CSV table

        Relative file paths are relative to the configuration file.
        The scenario is named after the file.
        """
        path = Path(path)
        model, grid = read_model_config(path)
        if 'times' not in grid:
            raise InvalidConfiguration(f'No [grid] times in {path}')

        config = ConfigParser()
        config.read(path)
        locate = lambda f: path.parent / Path(f).expanduser()

        coupler = None
        if config.has_section('source'):
            section = config['source']
            if 'constant' in section:
                curve = SourceCurve.constant(float(section['constant']))
            else:
                curve = SourceCurve.read_csv(locate(section['file']),
                    section['time_column'], section['value_column'])
            half_life = section.getfloat('half_life', fallback=None)
            coupler = IsotopeCoupler(curve, half_life)

        observations = None
        if config.has_section('observations'):
            section = config['observations']
            observations = Observations.read_csv(locate(section['file']),
                section['time_column'], section.get('mass_column'),
                section.get('delta_column'))

        kwargs.setdefault('name', path.stem)
        kwargs.setdefault('coupler', coupler)
        kwargs.setdefault('observations', observations)
        kwargs.setdefault('ages', grid.get('ages'))
        if 'quantiles' in grid:
            kwargs.setdefault('quantiles', grid['quantiles'])
        return cls(model, grid['times'], **kwargs)


    def available_datasets(self):
        """Datasets this scenario has the inputs for, in order of computation."""
        available = ['output']
        if self.ages is not None:
            available += ['age', 'transit_time', 'age_summary']
            if self.coupler is not None:
                available.append('isotope_distribution')
        if self.observations is not None:
            available += ['predicted', 'observed', 'error']
        return available


    def _require(self, attribute, dataset):
        if getattr(self, attribute) is None:
            raise InvalidConfiguration(
                f'Dataset "{dataset}" of {self} needs `{attribute}`')


    def _process_matrix(self):
        names = self.model.pool_names
        if self.model.is_linear:
            A = self.model.matrix(self.t_ref)
        else:
            A = self.model.matrix(self.t_ref, self['steady_state']['mass'].values)
        return pd.DataFrame(A, index=names, columns=names)


    def _process_inputs(self):
        u = np.array([self.model.input_vector(t) for t in self.times])
        return pd.DataFrame(u, columns=self.model.pool_names,
            index=pd.Index(self.times, name='time'))


    def _process_steady_state(self):
        steady_state = pd.DataFrame(index=self.model.pool_names, dtype='float')
        if self.coupler is None:
            steady_state['mass'] = spin_up(self.model, self.t_ref)
        else:
            mass, isotope = self.coupler.steady_state(self.model, self.t_ref)
            steady_state['mass'] = mass
            steady_state['isotope_mass'] = isotope
            with np.errstate(divide='ignore', invalid='ignore'):
                steady_state['delta'] = ratio_to_delta(
                    np.where(mass > 0, isotope / mass, np.nan),
                    self.coupler.standard_ratio)
        return steady_state


    def _initial_state(self):
        if not self.spinup:
            return None, None
        if self.coupler is None:
            return spin_up(self.model, self.times[0]), None
        return self.coupler.steady_state(self.model, self.times[0])


    def _process_raw_output(self):
        x0, isotope0 = self._initial_state()
        if self.coupler is None:
            return integrate(self.model, self.times, x0, **self.solver_options)
        return self.coupler.integrate(
            self.model, self.times, x0, isotope0, **self.solver_options)


    def _process_output(self):
        standard_ratio = None if self.coupler is None \
            else self.coupler.standard_ratio
        return derive_output(self.model, self['raw_output'], standard_ratio)


    def _age_distributions(self, dataset):
        self._require('ages', dataset)
        x = None if self.model.is_linear else self['steady_state']['mass'].values
        return age_distributions(
            self.model, self.ages, self.t_ref, self.quantiles, x)


    def _process_age(self):
        return self._age_distributions('age')['age']


    def _process_transit_time(self):
        return self._age_distributions('transit_time')['transit_time']


    def _process_age_summary(self):
        age, transit_time = self['age'], self['transit_time']
        summary = pd.concat(
            [age.summary(), transit_time.summary()], axis=1)
        summary.loc['exact_mean'] = [age.exact_mean, transit_time.exact_mean]
        return summary


    def _process_isotope_distribution(self):
        self._require('coupler', 'isotope_distribution')
        age = self['age']
        mass = self['steady_state']['mass'].values
        return isotope_distribution(self.ages, age.pool_density, mass,
            self.coupler, self.t_ref, self.n_bins, self.model.lag)


    def _process_predicted(self):
        output = self['output']
        columns = [c for c in self.predicted_columns if c in output.columns]
        output = output[columns].rename(columns=self.predicted_columns)
        observed = self['observed']
        output = output[output.columns.intersection(observed.columns)]
        dates = observed.index
        predicted = output.reindex(index=dates, method='nearest')
        return predicted


    def _process_observed(self):
        self._require('observations', 'observed')
        return self.observations.to_frame()


    def _process_error(self):
        predicted, observed = self['predicted'], self['observed']
        return predicted - observed[predicted.columns]
