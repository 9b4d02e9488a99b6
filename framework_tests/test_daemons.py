"""Tests for supervised daemons, using the fake daemon in place of the real binaries."""

import os
import pathlib as pl
import time
import typing as tp

import pytest
import requests

from external_minicluster.cluster_management import addresses
from external_minicluster.cluster_management import daemons
from external_minicluster.cluster_management import errors
from external_minicluster.cluster_management import rpc
from external_minicluster.cluster_management import status_files
from external_minicluster.utils import configuration


def _pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def _read_pid(data_dir: pl.Path) -> int:
    return int((data_dir / "pid").read_text())


def _read_argv(data_dir: pl.Path) -> list[str]:
    return (data_dir / "argv").read_text().splitlines()


def _ping(daemon: daemons.ExternalDaemon, timeout: float = 5) -> None:
    with requests.Session() as session:
        rpc.CoordinatorClient(session=session, address=daemon.bound_rpc_hostport).ping(
            timeout=timeout
        )


@pytest.fixture
def daemons_to_stop() -> tp.Generator[list[daemons.ExternalDaemon], None, None]:
    started: list[daemons.ExternalDaemon] = []
    yield started
    for daemon in started:
        daemon.resume()
        daemon.shutdown()


@pytest.fixture
def coordinator_factory(
    fake_bin_dir: pl.Path, tmp_path: pl.Path, daemons_to_stop: list[daemons.ExternalDaemon]
) -> tp.Callable[..., daemons.ExternalCoordinator]:
    def _create(**kwargs: tp.Any) -> daemons.ExternalCoordinator:
        kwargs.setdefault("data_dir", tmp_path / f"coordinator-{len(daemons_to_stop)}")
        coordinator = daemons.ExternalCoordinator(
            exe=fake_bin_dir / configuration.COORDINATOR_BINARY, **kwargs
        )
        daemons_to_stop.append(coordinator)
        return coordinator

    return _create


@pytest.fixture
def worker_factory(
    fake_bin_dir: pl.Path, tmp_path: pl.Path, daemons_to_stop: list[daemons.ExternalDaemon]
) -> tp.Callable[..., daemons.ExternalWorker]:
    def _create(**kwargs: tp.Any) -> daemons.ExternalWorker:
        kwargs.setdefault("data_dir", tmp_path / f"worker-{len(daemons_to_stop)}")
        kwargs.setdefault("coordinator_addrs", [addresses.HostPort("127.0.0.1", 1)])
        worker = daemons.ExternalWorker(exe=fake_bin_dir / configuration.WORKER_BINARY, **kwargs)
        daemons_to_stop.append(worker)
        return worker

    return _create


class TestStart:
    def test_coordinator_argv(self, coordinator_factory: tp.Callable):
        """Check that user flags come first, then extra flags, then the injected flags."""
        coordinator = coordinator_factory(extra_flags=["--custom_flag=1"])
        coordinator.start()

        data_dir = coordinator.data_dir
        assert _read_argv(data_dir) == [
            f"--coordinator_base_dir={data_dir}",
            "--coordinator_rpc_bind_addresses=127.0.0.1:0",
            "--coordinator_web_port=0",
            "--custom_flag=1",
            f"--server_dump_info_path={data_dir / 'info.json'}",
            "--server_dump_info_format=json",
            "--logtostderr",
            "--logbuflevel=-1",
            "--webserver_interface=localhost",
        ]

    def test_worker_argv(self, worker_factory: tp.Callable):
        worker = worker_factory(
            coordinator_addrs=[
                addresses.HostPort("127.0.0.1", 7051),
                addresses.HostPort("127.0.0.1", 7052),
            ]
        )
        worker.start()

        argv = _read_argv(worker.data_dir)
        assert argv[:4] == [
            f"--worker_base_dir={worker.data_dir}",
            "--worker_rpc_bind_addresses=127.0.0.1:0",
            "--worker_web_port=0",
            "--worker_coordinator_addrs=127.0.0.1:7051,127.0.0.1:7052",
        ]

    def test_status(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()

        assert coordinator.state == daemons.DaemonState.RUNNING
        assert coordinator.is_running()
        assert coordinator.pid == _read_pid(coordinator.data_dir)
        assert coordinator.status.extra["role"] == "coordinator"
        assert coordinator.bound_rpc_hostport.host == "127.0.0.1"
        assert not coordinator.bound_rpc_hostport.is_ephemeral
        assert not coordinator.bound_http_hostport.is_ephemeral
        assert coordinator.instance_id.permanent_uuid == (
            (coordinator.data_dir / "uuid").read_text()
        )
        assert coordinator.bound_rpc_addr() == (
            "127.0.0.1",
            coordinator.bound_rpc_hostport.port,
        )
        _ping(coordinator)

    def test_stdout_captured(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()

        assert coordinator.stdout_file.name == f"{configuration.COORDINATOR_BINARY}.stdout"
        assert "fake daemon listening" in coordinator.stdout_file.read_text()

    def test_cbor_status(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory(status_format=status_files.StatusFormat.CBOR)
        coordinator.start()

        assert coordinator.status_file.name == "info.cbor"
        assert "--server_dump_info_format=cbor" in _read_argv(coordinator.data_dir)
        _ping(coordinator)

    def test_stale_status_file_removed(self, coordinator_factory: tp.Callable, tmp_path: pl.Path):
        data_dir = tmp_path / "stale"
        data_dir.mkdir()
        (data_dir / "info.json").write_text("stale")

        coordinator = coordinator_factory(data_dir=data_dir)
        coordinator.start()
        _ping(coordinator)

    def test_start_twice(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()
        pid = coordinator.pid

        with pytest.raises(errors.AlreadyRunningError):
            coordinator.start()
        assert coordinator.pid == pid
        assert coordinator.is_running()

    def test_not_started(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()

        assert coordinator.state == daemons.DaemonState.NOT_STARTED
        assert coordinator.pid is None
        assert not coordinator.is_running()
        with pytest.raises(errors.NotStartedError):
            __ = coordinator.bound_rpc_hostport
        with pytest.raises(errors.NotStartedError):
            __ = coordinator.bound_http_hostport
        with pytest.raises(errors.NotStartedError):
            __ = coordinator.instance_id


class TestStartFailure:
    def test_exit_early(
        self,
        coordinator_factory: tp.Callable,
        fake_daemon_mode: tp.Callable,
        monkeypatch: pytest.MonkeyPatch,
    ):
        fake_daemon_mode("exit_early")
        monkeypatch.setenv("FAKE_DAEMON_EXIT_CODE", "7")
        coordinator = coordinator_factory()

        with pytest.raises(errors.ProcessExitedEarly) as excinfo:
            coordinator.start()
        assert excinfo.value.exit_code == 7
        assert coordinator.state == daemons.DaemonState.NOT_STARTED
        assert coordinator.pid is None

    def test_timeout(self, coordinator_factory: tp.Callable, fake_daemon_mode: tp.Callable):
        fake_daemon_mode("no_status")
        coordinator = coordinator_factory(start_timeout=2)

        start = time.monotonic()
        with pytest.raises(errors.StartupTimeout) as excinfo:
            coordinator.start()
        assert time.monotonic() - start >= 2
        assert excinfo.value.timeout == 2

        # The process was killed and reaped
        assert not _pid_exists(_read_pid(coordinator.data_dir))
        assert coordinator.pid is None
        assert not coordinator.is_running()

    def test_corrupt_status(self, coordinator_factory: tp.Callable, fake_daemon_mode: tp.Callable):
        fake_daemon_mode("corrupt_status")
        coordinator = coordinator_factory()

        with pytest.raises(errors.CorruptStatusArtifact) as excinfo:
            coordinator.start()
        assert excinfo.value.path == coordinator.status_file
        assert not _pid_exists(_read_pid(coordinator.data_dir))
        assert coordinator.pid is None

    def test_missing_binary(self, tmp_path: pl.Path):
        coordinator = daemons.ExternalCoordinator(
            exe=tmp_path / "nonexistent", data_dir=tmp_path / "coordinator"
        )
        with pytest.raises(errors.StartFailure):
            coordinator.start()
        assert coordinator.state == daemons.DaemonState.NOT_STARTED


class TestShutdown:
    def test_shutdown(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()
        pid = coordinator.pid
        rpc_hostport = coordinator.bound_rpc_hostport
        http_hostport = coordinator.bound_http_hostport

        coordinator.shutdown()

        assert not _pid_exists(pid)
        assert coordinator.state == daemons.DaemonState.STOPPED
        assert coordinator.pid is None
        assert coordinator.cached_rpc_hostport == rpc_hostport
        assert coordinator.cached_http_hostport == http_hostport

        # Safe to call again
        coordinator.shutdown()
        assert coordinator.state == daemons.DaemonState.STOPPED

    def test_shutdown_not_started(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.shutdown()

        assert coordinator.state == daemons.DaemonState.NOT_STARTED
        assert coordinator.cached_rpc_hostport == addresses.UNSET

    def test_shutdown_exited_process(self, coordinator_factory: tp.Callable):
        """Shutdown of a process that already died on its own only logs the failure."""
        coordinator = coordinator_factory()
        coordinator.start()
        os.kill(coordinator.pid, 9)

        coordinator.shutdown()
        assert coordinator.pid is None
        assert coordinator.state == daemons.DaemonState.STOPPED


class TestPause:
    def test_pause_resume(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()

        coordinator.pause()
        assert coordinator.state == daemons.DaemonState.PAUSED
        with pytest.raises(errors.RpcError):
            _ping(coordinator, timeout=0.5)

        coordinator.resume()
        assert coordinator.state == daemons.DaemonState.RUNNING
        _ping(coordinator)

    def test_pause_not_running(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.pause()
        coordinator.resume()
        assert coordinator.state == daemons.DaemonState.NOT_STARTED

    def test_pause_dead_process(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()
        os.kill(coordinator.pid, 9)
        coordinator._process.wait(timeout=10)

        with pytest.raises(errors.ProcessSignalError):
            coordinator.pause()

        coordinator.shutdown()
        assert coordinator.pid is None


class TestRestart:
    def test_restart_coordinator(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()
        orig_status = coordinator.status
        coordinator.shutdown()

        coordinator.restart()

        assert coordinator.state == daemons.DaemonState.RUNNING
        assert coordinator.bound_rpc_hostport == orig_status.rpc_hostport
        assert coordinator.bound_http_hostport.port == orig_status.http_hostport.port
        assert (
            coordinator.instance_id.permanent_uuid == orig_status.node_instance.permanent_uuid
        )
        assert coordinator.instance_id.instance_seqno > orig_status.node_instance.instance_seqno
        _ping(coordinator)

    def test_restart_worker(self, worker_factory: tp.Callable):
        worker = worker_factory()
        worker.start()
        orig_status = worker.status
        worker.shutdown()

        worker.restart()

        assert worker.bound_rpc_hostport == orig_status.rpc_hostport
        assert worker.bound_http_hostport.port == orig_status.http_hostport.port
        assert _read_argv(worker.data_dir)[1] == (
            f"--worker_rpc_bind_addresses={orig_status.rpc_hostport}"
        )

    def test_restart_never_started(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        with pytest.raises(errors.IllegalStateError):
            coordinator.restart()
        assert not (coordinator.data_dir / "pid").exists()

    def test_restart_running(self, coordinator_factory: tp.Callable):
        coordinator = coordinator_factory()
        coordinator.start()
        pid = coordinator.pid

        with pytest.raises(errors.IllegalStateError):
            coordinator.restart()
        assert coordinator.pid == pid

    def test_restart_after_failed_start(
        self, coordinator_factory: tp.Callable, fake_daemon_mode: tp.Callable
    ):
        """No addresses were ever learned, so there is nothing to restart on."""
        fake_daemon_mode("exit_early")
        coordinator = coordinator_factory()
        with pytest.raises(errors.ProcessExitedEarly):
            coordinator.start()

        with pytest.raises(errors.IllegalStateError):
            coordinator.restart()


def test_base_daemon_not_implemented(tmp_path: pl.Path):
    daemon = daemons.ExternalDaemon(exe="/bin/true", data_dir=tmp_path / "daemon")
    assert daemon.daemon_id == "daemon"
    with pytest.raises(NotImplementedError):
        daemon.start()
    with pytest.raises(NotImplementedError):
        daemon.restart()
