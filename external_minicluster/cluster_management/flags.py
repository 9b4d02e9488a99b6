"""Command line flags passed to the cluster daemons.

The names below are the argument contract that coordinator and worker binaries must honor.
"""

import dataclasses
import typing as tp

from external_minicluster.cluster_management import addresses

INDEX_PLACEHOLDER = "${index}"

# Injected into every daemon
DUMP_INFO_PATH = "server_dump_info_path"
DUMP_INFO_FORMAT = "server_dump_info_format"
LOG_TO_STDERR = "logtostderr"
LOG_BUF_LEVEL = "logbuflevel"
WEBSERVER_INTERFACE = "webserver_interface"

# Coordinator flags
COORDINATOR_BASE_DIR = "coordinator_base_dir"
COORDINATOR_RPC_BIND_ADDRESSES = "coordinator_rpc_bind_addresses"
COORDINATOR_WEB_PORT = "coordinator_web_port"
LEADER = "leader"
LEADER_ADDRESS = "leader_address"
FOLLOWER_ADDRESSES = "follower_addresses"

# Worker flags
WORKER_BASE_DIR = "worker_base_dir"
WORKER_RPC_BIND_ADDRESSES = "worker_rpc_bind_addresses"
WORKER_WEB_PORT = "worker_web_port"
WORKER_COORDINATOR_ADDRS = "worker_coordinator_addrs"

# `(base_flags, index) -> resolved_flags`
FlagsFactory = tp.Callable[[tp.Sequence[str], int], list[str]]


def flag(name: str, value: tp.Any = None) -> str:
    """Format a single flag.

    >>> flag("coordinator_web_port", 0)
    '--coordinator_web_port=0'
    >>> flag("leader")
    '--leader'
    """
    if value is None:
        return f"--{name}"
    return f"--{name}={value}"


def substitute_index(base_flags: tp.Sequence[str], index: int) -> list[str]:
    """Replace every occurrence of the index placeholder with the instance index.

    >>> substitute_index(["--fs_data_dirs=/data/${index}", "--foo"], 2)
    ['--fs_data_dirs=/data/2', '--foo']
    """
    str_index = str(index)
    return [f.replace(INDEX_PLACEHOLDER, str_index) for f in base_flags]


@dataclasses.dataclass(frozen=True, order=True)
class CoordinatorTopology:
    """Placement of a single coordinator in distributed topology."""

    index: int
    rpc_bind_address: addresses.HostPort
    topology_flags: tuple[str, ...]

    @property
    def is_leader(self) -> bool:
        return self.index == 0


def get_coordinator_topologies(
    rpc_addresses: tp.Sequence[addresses.HostPort],
) -> list[CoordinatorTopology]:
    """Return leader and follower placements for distributed coordinators.

    Coordinator at index 0 is the leader and knows about all the followers. Every follower knows
    the leader and all the other followers, but not itself.
    """
    if not rpc_addresses:
        return []

    leader_addr, *follower_addrs = rpc_addresses
    topologies = [
        CoordinatorTopology(
            index=0,
            rpc_bind_address=leader_addr,
            topology_flags=(
                flag(LEADER),
                flag(FOLLOWER_ADDRESSES, addresses.join_hostports(follower_addrs)),
            ),
        )
    ]

    for idx, curr_addr in enumerate(follower_addrs, start=1):
        other_peer_addrs = [a for i, a in enumerate(follower_addrs, start=1) if i != idx]
        topologies.append(
            CoordinatorTopology(
                index=idx,
                rpc_bind_address=curr_addr,
                topology_flags=(
                    flag(LEADER_ADDRESS, leader_addr),
                    flag(FOLLOWER_ADDRESSES, addresses.join_hostports(other_peer_addrs)),
                ),
            )
        )

    return topologies
