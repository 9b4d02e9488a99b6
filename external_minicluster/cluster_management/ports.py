"""Selection of free TCP ports for coordinators bound to fixed addresses."""

import contextlib
import logging
import random
import socket

from external_minicluster.cluster_management import addresses
from external_minicluster.utils import locking
from external_minicluster.utils import temptools

LOGGER = logging.getLogger(__name__)

PORTS_LOCK = ".ports.lock"

# Stay below the usual ephemeral port range (see `/proc/sys/net/ipv4/ip_local_port_range`),
# so ports picked by the OS for other daemons don't collide with the fixed ones.
PORTS_RANGE = (20000, 32000)

# Ports handed out by this process, never handed out twice
_used_ports: set[int] = set()


def is_port_free(port: int, host: str = addresses.LOCALHOST) -> bool:
    """Check that nothing listens on the port and it can be bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def get_free_ports(num: int, host: str = addresses.LOCALHOST) -> list[int]:
    """Return `num` distinct ports that are currently free.

    Selection is serialized between pytest workers.
    """
    lock_file = temptools.get_lock_dir() / PORTS_LOCK
    ports: list[int] = []
    candidates = list(range(*PORTS_RANGE))
    random.shuffle(candidates)

    with locking.worker_lock(lock_file):
        for port in candidates:
            if len(ports) == num:
                break
            if port in _used_ports:
                continue
            with contextlib.suppress(OSError):
                if is_port_free(port=port, host=host):
                    ports.append(port)
                    _used_ports.add(port)

    if len(ports) != num:
        msg = f"Couldn't find {num} free ports in range {PORTS_RANGE}."
        raise RuntimeError(msg)

    LOGGER.debug(f"Selected free ports: {ports}")
    return ports
