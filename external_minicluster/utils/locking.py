"""Locking of resources shared by pytest-xdist workers."""

import contextlib
import logging
import typing as tp

import filelock

from external_minicluster.utils import configuration
from external_minicluster.utils import types as ttypes

# Suppress messages from filelock
logging.getLogger("filelock").setLevel(logging.WARNING)


def worker_lock(lock_file: ttypes.FileType, timeout: float = -1) -> tp.ContextManager:
    """Return lock held exclusively by a single pytest worker.

    When not executing with multiple workers there is nobody to race with, and a dummy lock
    is returned.
    """
    if not configuration.IS_XDIST:
        return contextlib.nullcontext()
    return filelock.FileLock(lock_file, timeout=timeout)
