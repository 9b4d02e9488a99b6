"""The `framework.log` file for events worth reporting after the test session.

E.g. a cluster that failed to start. Every line is prefixed with the id of the test that was
running at the time.
"""

import functools
import logging
import pathlib as pl
import time

from external_minicluster.utils import pytest_utils
from external_minicluster.utils import temptools


class UTCFormatter(logging.Formatter):
    converter = time.gmtime  # type: ignore[assignment]


@functools.cache
def get_framework_log_path() -> pl.Path:
    return temptools.get_test_tmp() / "framework.log"


@functools.cache
def framework_logger() -> logging.Logger:
    """Get logger for the `framework.log` file. The logger is configured per pytest worker."""
    handler = logging.FileHandler(get_framework_log_path())
    handler.setFormatter(UTCFormatter("%(asctime)s %(levelname)s %(message)s"))

    logger = logging.getLogger("external_minicluster.framework")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    logger.addHandler(handler)
    return logger


def log_cluster_event(msg: str, level: int = logging.INFO) -> None:
    test_id = pytest_utils.get_current_test_id() or "<no test>"
    framework_logger().log(level, f"{test_id}: {msg}")
