"""Utility modules for the cluster engine."""

from .async_subprocess import (
    SubprocessResult,
    StreamingProcess,
    spawn_streaming,
    run_async,
)
from .async_fileio import (
    read_json_async,
    rmtree_async,
    symlink_if_missing_async,
)

__all__ = [
    'SubprocessResult',
    'StreamingProcess',
    'spawn_streaming',
    'run_async',
    'read_json_async',
    'rmtree_async',
    'symlink_if_missing_async',
]
