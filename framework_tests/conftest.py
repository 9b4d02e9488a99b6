import logging
import pathlib as pl
import sys
import typing as tp

import pytest
from _pytest.tmpdir import TempPathFactory

from external_minicluster.cluster_management import cluster
from external_minicluster.cluster_management import rpc
from external_minicluster.utils import configuration
from external_minicluster.utils import temptools

LOGGER = logging.getLogger(__name__)

FAKE_DAEMON = pl.Path(__file__).parent / "mocks" / "fake_daemon.py"


@pytest.fixture(scope="session", autouse=True)
def init_pytest_temp_dirs(tmp_path_factory: TempPathFactory) -> None:
    """Init `PytestTempDirs`."""
    temptools.PytestTempDirs.init(tmp_path_factory=tmp_path_factory)


@pytest.fixture(scope="session")
def fake_bin_dir(tmp_path_factory: TempPathFactory) -> pl.Path:
    """Return directory with executables named like the real daemons, running the fake daemon."""
    bin_dir = tmp_path_factory.mktemp("bin")
    for binary in (configuration.COORDINATOR_BINARY, configuration.WORKER_BINARY):
        script = bin_dir / binary
        script.write_text(
            f"#!{sys.executable}\n"
            "import runpy\n"
            f"runpy.run_path({str(FAKE_DAEMON)!r}, run_name='__main__')\n",
            encoding="utf-8",
        )
        script.chmod(0o755)
    return bin_dir


@pytest.fixture
def fake_daemon_mode(monkeypatch: pytest.MonkeyPatch) -> tp.Callable[[str], None]:
    """Set behavior of fake daemons started by the test."""

    def _set(mode: str) -> None:
        monkeypatch.setenv("FAKE_DAEMON_MODE", mode)

    return _set


@pytest.fixture
def cluster_factory(
    fake_bin_dir: pl.Path, tmp_path: pl.Path
) -> tp.Generator[tp.Callable[..., cluster.ClusterController], None, None]:
    """Return factory for clusters of fake daemons. All the clusters are shut down afterwards."""
    created: list[cluster.ClusterController] = []

    def _create(**kwargs: tp.Any) -> cluster.ClusterController:
        kwargs.setdefault("bin_path", fake_bin_dir)
        kwargs.setdefault("data_root", tmp_path / f"cluster{len(created)}")
        client_factory = kwargs.pop("client_factory", rpc.CoordinatorClient)
        cluster_obj = cluster.ClusterController(
            cluster.ClusterConfig(**kwargs), client_factory=client_factory
        )
        created.append(cluster_obj)
        return cluster_obj

    yield _create

    for cluster_obj in created:
        cluster_obj.shutdown()
