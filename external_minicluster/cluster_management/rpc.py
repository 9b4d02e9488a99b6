"""Client for the cluster membership RPC served by the coordinators."""

import dataclasses
import logging
import typing as tp

import requests

from external_minicluster.cluster_management import addresses
from external_minicluster.cluster_management import errors
from external_minicluster.cluster_management import status_files

LOGGER = logging.getLogger(__name__)

LIST_WORKERS_PATH = "/list-workers"
PING_PATH = "/ping"


@dataclasses.dataclass(frozen=True, order=True)
class WorkerEntry:
    """Worker as registered with the coordinator."""

    instance_id: status_files.NodeInstance
    rpc_addresses: tuple[addresses.HostPort, ...] = ()
    http_addresses: tuple[addresses.HostPort, ...] = ()


class CoordinatorClientType(tp.Protocol):
    address: addresses.HostPort

    def list_workers(self, timeout: float) -> list[WorkerEntry]: ...


# `(session, coordinator_address) -> client`
ClientFactory = tp.Callable[[requests.Session, addresses.HostPort], CoordinatorClientType]


def _parse_addrs(records: tp.Iterable[dict]) -> tuple[addresses.HostPort, ...]:
    return tuple(addresses.HostPort(host=str(r["host"]), port=int(r["port"])) for r in records)


class CoordinatorClient:
    """Utility class for interacting with a coordinator via its RPC endpoint."""

    def __init__(self, session: requests.Session, address: addresses.HostPort) -> None:
        self.session = session
        self.address = address
        self.base_url = f"http://{address}"

    def _get(self, path: str, timeout: float) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            msg = f"RPC `GET {path}` to coordinator {self.address} failed: {exc}"
            raise errors.RpcError(msg) from exc
        return response

    def ping(self, timeout: float) -> None:
        """Check that the coordinator responds."""
        self._get(PING_PATH, timeout=timeout)

    def list_workers(self, timeout: float) -> list[WorkerEntry]:
        """Return workers registered with the coordinator.

        The listing may contain workers that are no longer online.
        """
        response = self._get(LIST_WORKERS_PATH, timeout=timeout)
        try:
            data = response.json()
            workers = [
                WorkerEntry(
                    instance_id=status_files.NodeInstance.from_dict(rec["instance_id"]),
                    rpc_addresses=_parse_addrs(rec.get("rpc_addresses") or ()),
                    http_addresses=_parse_addrs(rec.get("http_addresses") or ()),
                )
                for rec in data["servers"]
            ]
        except (ValueError, TypeError, KeyError) as exc:
            msg = f"Unexpected response to `GET {LIST_WORKERS_PATH}` from {self.address}: {exc}"
            raise errors.RpcError(msg) from exc
        return workers
