"""Temporary directories for cluster data, logs and locks."""

import functools
import pathlib as pl
import tempfile

from _pytest.tmpdir import TempPathFactory

from external_minicluster.utils import configuration


class PytestTempDirs:
    """Temporary directories of the current pytest session.

    Set from `conftest.py`, where the `tmp_path_factory` fixture is available. Outside of pytest
    they stay unset, and the library falls back to `get_basetemp()`.
    """

    worker_tmp: pl.Path | None = None
    shared_tmp: pl.Path | None = None

    @classmethod
    def init(cls, tmp_path_factory: TempPathFactory) -> None:
        cls.worker_tmp = pl.Path(tmp_path_factory.getbasetemp())
        # With pytest-xdist every worker has its own basetemp inside a common root
        session_root = cls.worker_tmp.parent if configuration.IS_XDIST else cls.worker_tmp
        cls.shared_tmp = session_root / "tmp"
        cls.shared_tmp.mkdir(parents=True, exist_ok=True)

    @classmethod
    def is_initialized(cls) -> bool:
        return cls.worker_tmp is not None


@functools.cache
def get_basetemp() -> pl.Path:
    """Return temporary directory used outside of pytest."""
    basetemp = pl.Path(tempfile.gettempdir()) / "external-minicluster"
    basetemp.mkdir(mode=0o700, parents=True, exist_ok=True)
    return basetemp


def get_test_tmp() -> pl.Path:
    """Return temporary directory of the current pytest worker, or the base one."""
    return PytestTempDirs.worker_tmp or get_basetemp()


def get_lock_dir() -> pl.Path:
    """Return directory for lock files shared by all pytest workers."""
    return PytestTempDirs.shared_tmp or get_basetemp()
