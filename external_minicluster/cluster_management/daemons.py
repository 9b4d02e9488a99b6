"""Supervised coordinator and worker daemons.

A daemon is started with flags synthesized by the framework, and considered running once it
writes its status file. Addresses bound by the daemon are learned from the status file, and are
remembered on shutdown so the daemon can be restarted on the same addresses.
"""

import enum
import logging
import pathlib as pl
import signal
import subprocess
import time
import typing as tp

from external_minicluster.cluster_management import addresses
from external_minicluster.cluster_management import errors
from external_minicluster.cluster_management import flags
from external_minicluster.cluster_management import process
from external_minicluster.cluster_management import status_files
from external_minicluster.utils import configuration
from external_minicluster.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

# Upper bound on waiting for a killed process to be reaped
REAP_TIMEOUT = 30.0


class DaemonState(enum.StrEnum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class ExternalDaemon:
    """Generic daemon running as an external process."""

    ROLE: tp.ClassVar[str] = "daemon"

    def __init__(
        self,
        exe: ttypes.FileType,
        data_dir: ttypes.FileType,
        extra_flags: tp.Iterable[str] = (),
        *,
        start_timeout: float = configuration.PROCESS_START_TIMEOUT,
        poll_interval: float = configuration.PROCESS_START_POLL_INTERVAL,
        status_format: status_files.StatusFormat = status_files.StatusFormat(
            configuration.STATUS_DUMP_FORMAT
        ),
    ) -> None:
        self.exe = pl.Path(exe)
        self.data_dir = pl.Path(data_dir)
        # Extra flags come after the framework flags, so they can override them
        self.extra_flags = tuple(extra_flags)
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.status_format = status_files.StatusFormat(status_format)

        self.state = DaemonState.NOT_STARTED
        self._process: process.ProcessHandle | None = None
        self._status: status_files.StatusRecord | None = None

        # Addresses remembered on shutdown, reused on restart
        self._bound_rpc = addresses.UNSET
        self._bound_http = addresses.UNSET

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.daemon_id} {self.state}>"

    @property
    def daemon_id(self) -> str:
        return self.data_dir.name

    @property
    def status_file(self) -> pl.Path:
        return status_files.get_status_file(data_dir=self.data_dir, fmt=self.status_format)

    @property
    def stdout_file(self) -> pl.Path:
        return self.data_dir / f"{self.exe.name}.stdout"

    @property
    def pid(self) -> int | None:
        if self._process is None:
            return None
        return self._process.pid

    def is_running(self) -> bool:
        """Check that the process is tracked and didn't exit."""
        return self._process is not None and self._process.is_running()

    def start(self) -> None:
        """Start the daemon."""
        msg = f"Not implemented for daemon type '{self.ROLE}'."
        raise NotImplementedError(msg)

    def restart(self) -> None:
        """Start the daemon again on the addresses it used before shutdown."""
        msg = f"Not implemented for daemon type '{self.ROLE}'."
        raise NotImplementedError(msg)

    def _get_argv(self, user_flags: tp.Sequence[str]) -> list[str]:
        return [
            self.exe.name,
            *user_flags,
            *self.extra_flags,
            # Tell the server to dump its port information so we can pick it up
            flags.flag(flags.DUMP_INFO_PATH, self.status_file),
            flags.flag(flags.DUMP_INFO_FORMAT, self.status_format),
            # Make sure logging goes to the test output and doesn't get buffered
            flags.flag(flags.LOG_TO_STDERR),
            flags.flag(flags.LOG_BUF_LEVEL, -1),
            # Bind only to localhost in tests
            flags.flag(flags.WEBSERVER_INTERFACE, "localhost"),
        ]

    def _wait_for_status_file(self, proc: process.ProcessHandle) -> None:
        deadline = time.monotonic() + self.start_timeout
        while time.monotonic() < deadline:
            if self.status_file.exists():
                return
            time.sleep(self.poll_interval)
            rc = proc.poll()
            if rc is not None:
                msg = f"Process '{self.exe}' exited with rc={rc} before it started."
                raise errors.ProcessExitedEarly(msg, exit_code=rc)

        msg = f"Timed out waiting for process '{self.exe}' to start ({self.start_timeout}s)."
        raise errors.StartupTimeout(msg, timeout=self.start_timeout)

    def _discard_process(self, proc: process.ProcessHandle) -> None:
        """Kill a process that failed to start and reap it."""
        if proc.poll() is not None:
            return
        LOGGER.info(f"Killing {self.exe} with pid {proc.pid}")
        try:
            proc.kill()
            proc.wait(timeout=REAP_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.warning(f"Failed to kill {self.exe} with pid {proc.pid}: {exc}")

    def _start_process(self, user_flags: tp.Sequence[str]) -> None:
        if self._process is not None:
            msg = f"Daemon '{self.daemon_id}' is already running with pid {self._process.pid}."
            raise errors.AlreadyRunningError(msg)

        argv = self._get_argv(user_flags)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        # A previous instance of the daemon may have run in the same directory
        status_files.remove_stale_status_file(self.status_file)

        argv_str = "\n".join(argv)
        LOGGER.info(f"Running {self.exe}\n{argv_str}")

        prev_state = self.state
        proc = process.ProcessHandle(exe=self.exe, argv=argv, stdout_file=self.stdout_file)
        self.state = DaemonState.STARTING
        try:
            proc.start()
            try:
                self._wait_for_status_file(proc)
                status = status_files.read_status_file(self.status_file, fmt=self.status_format)
            except errors.StartFailure:
                self._discard_process(proc)
                raise
        except errors.StartFailure:
            self.state = (
                DaemonState.NOT_STARTED
                if prev_state == DaemonState.NOT_STARTED
                else DaemonState.STOPPED
            )
            raise

        LOGGER.info(f"Started {self.exe} as pid {proc.pid}")
        self._status = status
        self._process = proc
        self.state = DaemonState.RUNNING

    def _signal(self, sig: signal.Signals) -> None:
        if self._process is None:
            return
        try:
            self._process.send_signal(sig)
        except OSError as exc:
            msg = f"Failed to send {sig.name} to {self.exe} with pid {self._process.pid}: {exc}"
            raise errors.ProcessSignalError(msg) from exc

    def pause(self) -> None:
        """Stop execution of the process. Does nothing if no process is running."""
        if self._process is None:
            return
        LOGGER.debug(f"Pausing {self.exe} with pid {self._process.pid}")
        self._signal(signal.SIGSTOP)
        self.state = DaemonState.PAUSED

    def resume(self) -> None:
        """Continue execution of a paused process. Does nothing if no process is running."""
        if self._process is None:
            return
        LOGGER.debug(f"Resuming {self.exe} with pid {self._process.pid}")
        self._signal(signal.SIGCONT)
        self.state = DaemonState.RUNNING

    def shutdown(self) -> None:
        """Kill the process.

        Never fails, errors are only logged.
        """
        if self._process is None:
            return

        # Before we kill the process, store the addresses. If we're told to start again,
        # we'll reuse these.
        self._bound_rpc = self.bound_rpc_hostport
        self._bound_http = self.bound_http_hostport

        proc = self._process
        LOGGER.info(f"Killing {self.exe} with pid {proc.pid}")
        try:
            proc.kill()
        except OSError as exc:
            LOGGER.warning(f"Failed to kill {self.exe} with pid {proc.pid}: {exc}")
        try:
            proc.wait(timeout=REAP_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.warning(f"Waiting on {self.exe} with pid {proc.pid} failed: {exc}")

        self._process = None
        self.state = DaemonState.STOPPED

    def _check_restartable(self) -> None:
        # The addresses are stored on shutdown, so make sure it happened first
        if self._process is not None or self._bound_rpc.port == 0:
            msg = (
                f"{self.ROLE.capitalize()} '{self.daemon_id}' cannot be restarted. "
                "Must call shutdown() first."
            )
            raise errors.IllegalStateError(msg)

    @property
    def status(self) -> status_files.StatusRecord:
        """Return the status record read during the last successful start."""
        if self._status is None:
            msg = f"Daemon '{self.daemon_id}' was not started."
            raise errors.NotStartedError(msg)
        return self._status

    @property
    def bound_rpc_hostport(self) -> addresses.HostPort:
        return self.status.rpc_hostport

    @property
    def bound_http_hostport(self) -> addresses.HostPort:
        return self.status.http_hostport

    @property
    def instance_id(self) -> status_files.NodeInstance:
        return self.status.node_instance

    @property
    def cached_rpc_hostport(self) -> addresses.HostPort:
        """RPC address remembered on the last shutdown."""
        return self._bound_rpc

    @property
    def cached_http_hostport(self) -> addresses.HostPort:
        """HTTP address remembered on the last shutdown."""
        return self._bound_http

    def bound_rpc_addr(self) -> tuple[str, int]:
        """Return the RPC address resolved to a socket address."""
        return self.bound_rpc_hostport.resolve_addresses()[0]


class ExternalCoordinator(ExternalDaemon):
    """Coordinator (leader or follower) daemon.

    Binds to an ephemeral port unless `rpc_bind_address` is given. Fixed address is needed when
    multiple coordinators must find each other at known locations.
    """

    ROLE: tp.ClassVar[str] = "coordinator"

    def __init__(
        self,
        exe: ttypes.FileType,
        data_dir: ttypes.FileType,
        extra_flags: tp.Iterable[str] = (),
        *,
        rpc_bind_address: addresses.HostPort = addresses.EPHEMERAL_LOCAL,
        **kwargs: tp.Any,
    ) -> None:
        super().__init__(exe, data_dir, extra_flags, **kwargs)
        self.rpc_bind_address = rpc_bind_address

    def start(self) -> None:
        self._start_process(
            [
                flags.flag(flags.COORDINATOR_BASE_DIR, self.data_dir),
                flags.flag(flags.COORDINATOR_RPC_BIND_ADDRESSES, self.rpc_bind_address),
                flags.flag(flags.COORDINATOR_WEB_PORT, 0),
            ]
        )

    def restart(self) -> None:
        self._check_restartable()
        # Peers of a fixed-address coordinator know it by the configured address
        rpc_address = (
            self._bound_rpc if self.rpc_bind_address.is_ephemeral else self.rpc_bind_address
        )
        self._start_process(
            [
                flags.flag(flags.COORDINATOR_BASE_DIR, self.data_dir),
                flags.flag(flags.COORDINATOR_RPC_BIND_ADDRESSES, rpc_address),
                flags.flag(flags.COORDINATOR_WEB_PORT, self._bound_http.port),
            ]
        )


class ExternalWorker(ExternalDaemon):
    """Worker daemon registering with the given coordinators."""

    ROLE: tp.ClassVar[str] = "worker"

    def __init__(
        self,
        exe: ttypes.FileType,
        data_dir: ttypes.FileType,
        coordinator_addrs: tp.Iterable[addresses.HostPort],
        extra_flags: tp.Iterable[str] = (),
        *,
        bind_host: str = addresses.LOCALHOST,
        **kwargs: tp.Any,
    ) -> None:
        super().__init__(exe, data_dir, extra_flags, **kwargs)
        self.coordinator_addrs = addresses.join_hostports(coordinator_addrs)
        self.bind_host = bind_host

    def start(self) -> None:
        self._start_process(
            [
                flags.flag(flags.WORKER_BASE_DIR, self.data_dir),
                flags.flag(flags.WORKER_RPC_BIND_ADDRESSES, addresses.ephemeral(self.bind_host)),
                flags.flag(flags.WORKER_WEB_PORT, 0),
                flags.flag(flags.WORKER_COORDINATOR_ADDRS, self.coordinator_addrs),
            ]
        )

    def restart(self) -> None:
        self._check_restartable()
        self._start_process(
            [
                flags.flag(flags.WORKER_BASE_DIR, self.data_dir),
                flags.flag(flags.WORKER_RPC_BIND_ADDRESSES, self._bound_rpc),
                flags.flag(flags.WORKER_WEB_PORT, self._bound_http.port),
                flags.flag(flags.WORKER_COORDINATOR_ADDRS, self.coordinator_addrs),
            ]
        )
