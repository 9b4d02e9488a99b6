"""Provisioning of an ephemeral cluster of external coordinator and worker processes."""

import dataclasses
import enum
import logging
import pathlib as pl
import shutil
import sys
import time
import typing as tp

import requests

from external_minicluster.cluster_management import addresses
from external_minicluster.cluster_management import daemons
from external_minicluster.cluster_management import errors
from external_minicluster.cluster_management import flags
from external_minicluster.cluster_management import rpc
from external_minicluster.cluster_management import status_files
from external_minicluster.utils import artifacts
from external_minicluster.utils import configuration
from external_minicluster.utils import framework_log
from external_minicluster.utils import helpers
from external_minicluster.utils import http_client
from external_minicluster.utils import temptools

LOGGER = logging.getLogger(__name__)

DATA_ROOT_DIRNAME = "minicluster-data"


class ClusterState(enum.StrEnum):
    NOT_STARTED = "not_started"
    STARTED = "started"


@dataclasses.dataclass(frozen=True)
class ClusterConfig:
    """Cluster configuration.

    `coordinator_rpc_ports` is required only when `num_coordinators` > 1, coordinators are then
    bound to these ports on `bind_host`. Extra flags are passed through `*_flags_fn` together
    with the instance index, the default replaces the `${index}` placeholder.
    """

    num_coordinators: int = 1
    num_workers: int = 1
    bin_path: pl.Path | None = None
    data_root: pl.Path | None = None
    coordinator_rpc_ports: tuple[int, ...] = ()
    extra_coordinator_flags: tuple[str, ...] = ()
    extra_worker_flags: tuple[str, ...] = ()
    coordinator_flags_fn: flags.FlagsFactory = flags.substitute_index
    worker_flags_fn: flags.FlagsFactory = flags.substitute_index
    coordinator_binary: str = configuration.COORDINATOR_BINARY
    worker_binary: str = configuration.WORKER_BINARY
    bind_host: str = configuration.BIND_HOST
    start_timeout: float = configuration.PROCESS_START_TIMEOUT
    registration_timeout: float = configuration.WORKER_REGISTRATION_TIMEOUT
    status_format: status_files.StatusFormat = status_files.StatusFormat(
        configuration.STATUS_DUMP_FORMAT
    )

    def __post_init__(self) -> None:
        # Accept lists for convenience, store immutable tuples
        for field_name in (
            "coordinator_rpc_ports",
            "extra_coordinator_flags",
            "extra_worker_flags",
        ):
            object.__setattr__(self, field_name, tuple(getattr(self, field_name)))

    def validate(self) -> None:
        """Check the configuration before any process is spawned."""
        if self.num_coordinators < 1:
            msg = f"Invalid number of coordinators '{self.num_coordinators}': must be >= 1"
            raise errors.ConfigurationError(msg)
        if self.num_workers < 0:
            msg = f"Invalid number of workers '{self.num_workers}': must be >= 0"
            raise errors.ConfigurationError(msg)
        if self.num_coordinators > 1 and len(self.coordinator_rpc_ports) != self.num_coordinators:
            msg = (
                f"{self.num_coordinators} coordinators requested, but "
                f"{len(self.coordinator_rpc_ports)} ports specified in 'coordinator_rpc_ports'"
            )
            raise errors.ConfigurationError(msg)
        if any(not 0 < p <= 65535 for p in self.coordinator_rpc_ports):
            msg = f"Invalid port in 'coordinator_rpc_ports': {self.coordinator_rpc_ports}"
            raise errors.ConfigurationError(msg)


class ClusterController:
    """Start, supervise and tear down a cluster of external coordinators and workers.

    Coordinators are started first, then the workers, and the start finishes once the leader
    coordinator reports all the workers as registered.
    """

    def __init__(
        self,
        config: ClusterConfig | None = None,
        *,
        client_factory: rpc.ClientFactory = rpc.CoordinatorClient,
    ) -> None:
        self.config = config or ClusterConfig()
        self.client_factory = client_factory
        self.state = ClusterState.NOT_STARTED

        self._coordinators: list[daemons.ExternalCoordinator] = []
        self._workers: list[daemons.ExternalWorker] = []
        self._session: requests.Session | None = None
        self._bin_path = pl.Path("/nonexistent")
        self._data_root = pl.Path("/nonexistent")

    def __enter__(self) -> "ClusterController":
        self._check_startable()
        try:
            self.start()
        except Exception:
            self.shutdown()
            raise
        return self

    def __exit__(self, *args: tp.Any) -> None:
        self.shutdown()

    def __del__(self) -> None:
        if getattr(self, "state", None) == ClusterState.STARTED:
            self.shutdown()

    @property
    def is_started(self) -> bool:
        return self.state == ClusterState.STARTED

    @property
    def bin_path(self) -> pl.Path:
        return self._bin_path

    @property
    def data_root(self) -> pl.Path:
        return self._data_root

    @staticmethod
    def deduce_bin_root() -> pl.Path:
        """Return directory of the currently running executable."""
        return pl.Path(sys.executable).resolve().parent

    def _handle_options(self) -> None:
        bin_path = self.config.bin_path or configuration.BIN_PATH
        self._bin_path = pl.Path(bin_path) if bin_path else self.deduce_bin_root()

        data_root = self.config.data_root or configuration.DATA_ROOT
        # If data root is not specified, use test specific temp directory
        self._data_root = (
            pl.Path(data_root) if data_root else temptools.get_test_tmp() / DATA_ROOT_DIRNAME
        )

    def get_binary_path(self, binary: str) -> pl.Path:
        return self._bin_path / binary

    def get_data_path(self, daemon_id: str) -> pl.Path:
        return self._data_root / daemon_id

    def _check_startable(self) -> None:
        if self.is_started:
            msg = "Cluster is already started."
            raise errors.AlreadyStartedError(msg)
        if self._coordinators or self._workers:
            msg = "Cluster was partially started, call shutdown() first."
            raise errors.IllegalStateError(msg)

    def start(self) -> None:
        """Start the cluster and wait until all the workers are registered."""
        self._check_startable()
        self.config.validate()
        self._handle_options()

        try:
            self._data_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Could not create root dir '{self._data_root}'"
            raise errors.ConfigurationError(msg) from exc

        # Left over by a start that failed before any member was started
        if self._session is not None:
            self._session.close()
        self._session = http_client.new_session()

        try:
            if self.config.num_coordinators > 1:
                self._start_distributed_coordinators()
            else:
                self._start_single_coordinator()

            for __ in range(self.config.num_workers):
                self.add_worker()

            self.wait_for_worker_count(
                count=self.config.num_workers, timeout=self.config.registration_timeout
            )
        except errors.MiniClusterError as exc:
            framework_log.log_cluster_event(
                f"Failed to start cluster in '{self._data_root}': {exc}", level=logging.ERROR
            )
            raise

        self.state = ClusterState.STARTED
        LOGGER.info(
            f"Cluster started with {self.num_coordinators} coordinator(s) "
            f"and {self.num_workers} worker(s)."
        )

    def _new_coordinator(
        self,
        *,
        index: int,
        daemon_id: str,
        rpc_bind_address: addresses.HostPort,
        extra: tp.Sequence[str],
    ) -> daemons.ExternalCoordinator:
        base_flags = [*self.config.extra_coordinator_flags, *extra]
        return daemons.ExternalCoordinator(
            exe=self.get_binary_path(self.config.coordinator_binary),
            data_dir=self.get_data_path(daemon_id),
            extra_flags=self.config.coordinator_flags_fn(base_flags, index),
            rpc_bind_address=rpc_bind_address,
            start_timeout=self.config.start_timeout,
            status_format=self.config.status_format,
        )

    def _start_coordinator(self, coordinator: daemons.ExternalCoordinator, index: int) -> None:
        try:
            coordinator.start()
        except errors.MiniClusterError as exc:
            role = "leader coordinator" if index == 0 else "follower coordinator"
            msg = f"Unable to start {role} at index {index}: {exc}"
            raise errors.ClusterStartError(msg, role="coordinator", index=index) from exc
        self._coordinators.append(coordinator)

    def _start_single_coordinator(self) -> None:
        coordinator = self._new_coordinator(
            index=0,
            daemon_id="coordinator",
            rpc_bind_address=addresses.ephemeral(self.config.bind_host),
            extra=(),
        )
        self._start_coordinator(coordinator, index=0)

    def _start_distributed_coordinators(self) -> None:
        rpc_addrs = [
            addresses.HostPort(host=self.config.bind_host, port=p)
            for p in self.config.coordinator_rpc_ports
        ]
        to_start = [
            self._new_coordinator(
                index=topology.index,
                daemon_id=f"coordinator-{topology.index}",
                rpc_bind_address=topology.rpc_bind_address,
                extra=topology.topology_flags,
            )
            for topology in flags.get_coordinator_topologies(rpc_addrs)
        ]
        for idx, coordinator in enumerate(to_start):
            self._start_coordinator(coordinator, index=idx)

    def add_worker(self) -> daemons.ExternalWorker:
        """Start a new worker with the next free index."""
        if not self._coordinators:
            msg = "Must have started at least 1 coordinator before adding workers."
            raise errors.IllegalStateError(msg)

        idx = len(self._workers)
        worker = daemons.ExternalWorker(
            exe=self.get_binary_path(self.config.worker_binary),
            data_dir=self.get_data_path(f"worker-{idx}"),
            coordinator_addrs=[c.bound_rpc_hostport for c in self._coordinators],
            extra_flags=self.config.worker_flags_fn(self.config.extra_worker_flags, idx),
            bind_host=self.config.bind_host,
            start_timeout=self.config.start_timeout,
            status_format=self.config.status_format,
        )
        try:
            worker.start()
        except errors.MiniClusterError as exc:
            msg = f"Failed starting worker {idx}: {exc}"
            raise errors.ClusterStartError(msg, role="worker", index=idx) from exc
        self._workers.append(worker)
        return worker

    def _count_matching_workers(self, entries: tp.Iterable[rpc.WorkerEntry]) -> int:
        # Compare identities, not addresses. The listing may contain workers that are no longer
        # online, and a port may have been reused by another worker.
        local_ids = {w.instance_id for w in self._workers}
        return sum(1 for e in entries if e.instance_id in local_ids)

    def wait_for_worker_count(
        self,
        count: int,
        timeout: float = configuration.WORKER_REGISTRATION_TIMEOUT,
        poll_interval: float = configuration.REGISTRATION_POLL_INTERVAL,
    ) -> None:
        """Wait until `count` of our workers are registered with the leader coordinator.

        Failure of the RPC call is not retried.
        """
        deadline = time.monotonic() + timeout
        client = self.leader_coordinator_client()

        while True:
            remaining = deadline - time.monotonic()
            if remaining < 0:
                msg = f"{count} worker(s) never registered with coordinator"
                raise errors.ConvergenceTimeout(msg)

            entries = client.list_workers(timeout=max(remaining, 0.001))

            match_count = self._count_matching_workers(entries)
            LOGGER.debug(f"{match_count} of {count} worker(s) registered with coordinator")
            if match_count == count:
                LOGGER.info(f"{count} worker(s) registered with coordinator")
                return

            time.sleep(poll_interval)

    def shutdown(self) -> None:
        """Stop all the processes. Safe to call multiple times and on partially started cluster."""
        nothing_to_stop = not (self._coordinators or self._workers) and self._session is None
        if nothing_to_stop and not self.is_started:
            return

        with helpers.ignore_interrupt():
            for coordinator in self._coordinators:
                coordinator.shutdown()
            self._coordinators.clear()

            for worker in self._workers:
                worker.shutdown()
            self._workers.clear()

            if self._session is not None:
                self._session.close()
                self._session = None

        if self.is_started:
            framework_log.log_cluster_event(f"Cluster in '{self._data_root}' shut down")
        self.state = ClusterState.NOT_STARTED

    def save_artifacts(self, save_dir: pl.Path) -> pl.Path:
        """Copy output and status files of all the daemons to `save_dir`."""
        return artifacts.save_daemon_artifacts(
            save_dir=save_dir, daemons_list=[*self._coordinators, *self._workers]
        )

    def cleanup(self) -> None:
        """Remove the data root of a cluster that is not running."""
        if self._coordinators or self._workers:
            msg = "Cannot remove data of a running cluster, call shutdown() first."
            raise errors.IllegalStateError(msg)
        if configuration.KEEP_CLUSTER_DATA:
            LOGGER.info(f"Keeping cluster data in '{self._data_root}'.")
            return
        if self._data_root.exists():
            shutil.rmtree(self._data_root, ignore_errors=True)

    @property
    def num_coordinators(self) -> int:
        return len(self._coordinators)

    @property
    def num_workers(self) -> int:
        return len(self._workers)

    @property
    def coordinators(self) -> tuple[daemons.ExternalCoordinator, ...]:
        return tuple(self._coordinators)

    @property
    def workers(self) -> tuple[daemons.ExternalWorker, ...]:
        return tuple(self._workers)

    def coordinator(self, idx: int = 0) -> daemons.ExternalCoordinator:
        return self._coordinators[idx]

    @property
    def leader_coordinator(self) -> daemons.ExternalCoordinator:
        if not self._coordinators:
            msg = "No coordinator was started."
            raise errors.NotStartedError(msg)
        return self._coordinators[0]

    def worker(self, idx: int) -> daemons.ExternalWorker:
        return self._workers[idx]

    def coordinator_client(self, idx: int = 0) -> rpc.CoordinatorClientType:
        """Return RPC client for the coordinator at the given index."""
        if self._session is None:
            msg = "The RPC client context is not available, cluster was not started."
            raise errors.NotStartedError(msg)
        if not 0 <= idx < len(self._coordinators):
            msg = f"No coordinator at index {idx}."
            raise IndexError(msg)
        return self.client_factory(self._session, self._coordinators[idx].bound_rpc_hostport)

    def leader_coordinator_client(self) -> rpc.CoordinatorClientType:
        return self.coordinator_client(0)

    def single_coordinator_client(self) -> rpc.CoordinatorClientType:
        """Return RPC client for the only coordinator of the cluster."""
        if len(self._coordinators) != 1:
            msg = f"Expected exactly 1 coordinator, cluster has {len(self._coordinators)}."
            raise errors.IllegalStateError(msg)
        return self.coordinator_client(0)

    def create_client(self) -> rpc.CoordinatorClientType:
        """Return RPC client for the leader coordinator of a started cluster."""
        if not self.is_started:
            msg = "Cluster is not started."
            raise errors.NotStartedError(msg)
        return self.leader_coordinator_client()
