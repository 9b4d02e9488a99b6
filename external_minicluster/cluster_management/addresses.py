"""Network addresses of cluster daemons."""

import dataclasses
import socket
import typing as tp

from external_minicluster.cluster_management import errors

LOCALHOST = "127.0.0.1"


@dataclasses.dataclass(frozen=True, order=True)
class HostPort:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_ephemeral(self) -> bool:
        return self.port == 0

    @classmethod
    def parse(cls, hostport: str) -> "HostPort":
        """Parse `host:port` string.

        >>> HostPort.parse("127.0.0.1:7051")
        HostPort(host='127.0.0.1', port=7051)
        """
        host, sep, port_str = hostport.rpartition(":")
        if not sep or not port_str.isdigit():
            msg = f"Invalid address '{hostport}': expected 'host:port'"
            raise ValueError(msg)
        port = int(port_str)
        if port > 65535:
            msg = f"Invalid port in address '{hostport}'"
            raise ValueError(msg)
        return cls(host=host or LOCALHOST, port=port)

    def resolve_addresses(self) -> list[tuple[str, int]]:
        """Resolve the host to socket addresses usable with `socket.connect`."""
        try:
            addrinfo = socket.getaddrinfo(
                self.host, self.port, type=socket.SOCK_STREAM, proto=socket.IPPROTO_TCP
            )
        except (socket.gaierror, UnicodeError) as exc:
            msg = f"Failed to resolve address '{self}'"
            raise errors.AddressResolutionError(msg) from exc

        addrs = [(str(sa[0]), int(sa[1])) for *__, sa in addrinfo]
        if not addrs:
            msg = f"No addresses found for '{self}'"
            raise errors.AddressResolutionError(msg)
        return addrs


# Address that makes the daemon bind to a port picked by the OS
EPHEMERAL_LOCAL = HostPort(host=LOCALHOST, port=0)
# Placeholder for addresses that were never discovered
UNSET = HostPort(host="", port=0)


def ephemeral(host: str = LOCALHOST) -> HostPort:
    return HostPort(host=host, port=0)


def join_hostports(hostports: tp.Iterable[HostPort]) -> str:
    """Serialize addresses to comma separated string.

    >>> join_hostports([HostPort("127.0.0.1", 1), HostPort("127.0.0.1", 2)])
    '127.0.0.1:1,127.0.0.1:2'
    """
    return ",".join(str(hp) for hp in hostports)
