"""Manager/worker coordination for fixed-size SPMD process groups."""

from . import cli
from . import collectives
from . import darts
from . import errors
from . import group
from . import launch
from . import logging_utils
from . import metrics
from . import runner

from .collectives import CollectiveOps
from .errors import ErrorCode, RunResult
from .group import GroupConfig, GroupContext, resolve_group_config
from .runner import RoleRunner, RoleWorkloads

__version__ = "0.1.0"

__all__ = [
    'cli',
    'collectives',
    'darts',
    'errors',
    'group',
    'launch',
    'logging_utils',
    'metrics',
    'runner',
    'CollectiveOps',
    'ErrorCode',
    'GroupConfig',
    'GroupContext',
    'RoleRunner',
    'RoleWorkloads',
    'RunResult',
    'resolve_group_config',
]
