from pathlib import Path
from tracer_pool_models.config import get_config

config = get_config()

REPOSITORYPATH = Path(__file__).resolve().parent.parent

absolute_path = lambda x: REPOSITORYPATH / Path(config['path'][x]).expanduser()

DUMPPATH = absolute_path('dump')
LOGPATH = absolute_path('log')
LOGFILEPATH = LOGPATH / config['log']['filename']

del Path, get_config, config, absolute_path
