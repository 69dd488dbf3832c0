"""
Lazily computed, cached datasets.

Copyright (C) 2024  Alexander S. Brunmayr  <asb219@ic.ac.uk>

This file is part of the ``tracer_pool_models`` python package, subject to
the GNU General Public License v3 (GPLv3). You should have received a copy
of GPLv3 along with this file. If not, see <https://www.gnu.org/licenses/>.
"""

from pathlib import Path

import pandas as pd
from loguru import logger


__all__ = [
    'Data',
    'DatasetNotFoundError'
]


class DatasetNotFoundError(KeyError):
    """Name of dataset is not listed in :py:attr:`Data.datasets`."""

    def __init__(self, dataset, cls=None):
        message = f"No dataset named '{dataset}'"
        if cls is not None:
            message += f' in {cls.__class__.__name__}'
        super().__init__(message)



class Data:
    """
    Hosts a collection of datasets, typically :py:class:`pandas.DataFrame`,
    :py:class:`pandas.Series` or result objects of the engine modules.
    Subclasses overwrite the :py:attr:`datasets` class attribute and
    provide a :py:meth:`_process_\<dataset\>` method for each dataset.
    A dataset is computed the first time it is requested and cached.
    
    Datasets can be accessed by name via the :py:meth:`get` method,
    through indexing, or as attributes.
    
    Parameters
    ----------
    savedir : str or os.PathLike
        Directory where datasets are written to file
    name : str
        Name of data, used as filename prefix
    description : str, optional
        Description of data
    
    Other parameters
    ----------------
    save_pkl : bool, default False
        Automatically pickle datasets to `.pkl.gz` files in `savedir`
    """

    datasets = []
    "Names of available datasets (class attribute)"

    def __init__(self, savedir, name, description=None, *, save_pkl=False):
        self._savedir = Path(savedir).expanduser().resolve()
        self._name = str(name)
        self._description = description
        self._save_pkl = save_pkl
        self.__cache = {}


    @property
    def savedir(self) -> Path:
        """Default directory where data files are saved"""
        return self._savedir

    @property
    def name(self) -> str:
        """Default filename prefix for saved data files"""
        return self._name

    @property
    def description(self) -> str:
        """Description of the data"""
        return self._description


    def get(self, dataset, cached=True):
        """
        Get dataset from cache, or :py:meth:`process` it if it is not
        cached yet (or if `cached=False`).
        
        Raises
        ------
        DatasetNotFoundError
            If `dataset` is not in :py:attr:`datasets`
        """
        if dataset not in self.datasets:
            raise DatasetNotFoundError(dataset, self)

        if cached:
            try:
                return self.__cache[dataset]
            except KeyError:
                pass

        data = self.process(dataset)
        self.__cache[dataset] = data

        if self._save_pkl:
            self.to_pickle(dataset)

        return data


    def process(self, dataset):
        """Produce dataset by calling :py:meth:`_process_\<dataset\>`."""
        if dataset not in self.datasets:
            raise DatasetNotFoundError(dataset, self)
        logger.debug(f'Processing dataset "{dataset}" of {self}')
        return getattr(self, '_process_'+dataset)()


    def is_cached(self, dataset):
        return dataset in self.__cache


    def items(self):
        """Generate (name, dataset) pairs, processing datasets as needed."""
        for dataset in self.datasets:
            yield dataset, self.get(dataset)


    def path(self, dataset, suffix='.pkl.gz'):
        return self.savedir / (self.name + '_' + dataset + suffix)


    def to_pickle(self, dataset, path=None):
        """Pickle dataset with :py:func:`pandas.to_pickle`."""
        path = self.path(dataset) if path is None else Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        pd.to_pickle(self.get(dataset), path)
        logger.debug(f'Wrote dataset "{dataset}" to pickle file: {path}')
        return path


    def to_csv(self, dataset, path=None, **kwargs):
        """Write a tabular dataset, or the table of a result object
        providing a ``to_frame`` method, to a CSV file."""
        data = self.get(dataset)
        if hasattr(data, 'to_frame') and not isinstance(data, pd.DataFrame):
            data = data.to_frame()
        path = self.path(dataset, '.csv') if path is None else Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data.to_csv(path, **kwargs)
        logger.info(f'Wrote dataset "{dataset}" to csv file: {path}')
        return path


    def purge_cache(self):
        """Empty data cache."""
        self.__cache = {}


    def __getitem__(self, item):
        if isinstance(item, str):
            return self.get(item)
        try:
            iter(item)
        except TypeError:
            raise TypeError('Key must be str or an iterable of str')
        else:
            return [self[i] for i in item]

    def __getattr__(self, name):
        # only called when regular attribute lookup fails
        if name.startswith('_') or name not in type(self).datasets:
            raise AttributeError(
                f"'{self.__class__.__name__}' object has no attribute '{name}'")
        return self.get(name)

    def __dir__(self):
        return list(super().__dir__()) + list(self.datasets)

    def __repr__(self):
        if self.description is None:
            info = f'(name="{self.name}", description=None)'
        else:
            info = f'(name="{self.name}", description="{self.description}")'
        return self.__class__.__name__ + info

    def __str__(self):
        return self.__class__.__name__ + f'("{self.name}")'
