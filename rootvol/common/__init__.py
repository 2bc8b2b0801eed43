# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Shared rootvol components.
"""

__all__ = [
    'backoff', 'Deadline', 'LoopExceeded', 'poll_until',
    'with_retry', 'retry_if',
    'run_process',
]

from ._retry import (
    backoff, Deadline, LoopExceeded, poll_until, with_retry, retry_if,
)
from .process import run_process
