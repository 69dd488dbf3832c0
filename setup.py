from setuptools import setup

setup(
    name='tracer-pool-models',
    version='1.0.0',
    description='Compartmental tracer models with isotopes and ages',
    long_description='Simulate pool (compartmental) models of a tracer with'\
        ' a radioactive isotope, compute age and transit-time distributions,'\
        ' and estimate model parameters from observed time series',
    author='Alexander S. Brunmayr',
    author_email='asb219@ic.ac.uk',
    license='GNU General Public License v3 (GPLv3)',
    packages=[
        'tracer_pool_models'
    ],
    install_requires=[
        'numpy',
        'scipy',
        'pandas',
        'loguru',
        'numba'
    ],
    extras_require={
        'test': ['pytest']
    },
    entry_points={'console_scripts': [
        'tracer-pool-config = tracer_pool_models.config:main'
    ]},
    package_data={
        'tracer_pool_models': ['config_defaults.ini']
    }
)
