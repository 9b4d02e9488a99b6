"""Status files written by the daemons once their network listeners are bound.

The status file is the only signal of a successful start. It holds a serialized record::

    {
        "node_instance": {"permanent_uuid": "<str>", "instance_seqno": <int>},
        "bound_rpc_addresses": [{"host": "<str>", "port": <int>}, ...],
        "bound_http_addresses": [{"host": "<str>", "port": <int>}, ...],
    }

Only the first entry of each address list is used by the framework. Other keys written by the
daemon are kept in `StatusRecord.extra`.
"""

import dataclasses
import enum
import json
import logging
import os
import pathlib as pl
import typing as tp

import cbor2

from external_minicluster.cluster_management import addresses
from external_minicluster.cluster_management import errors
from external_minicluster.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

STATUS_FILE_STEM = "info"


class StatusFormat(enum.StrEnum):
    JSON = "json"
    CBOR = "cbor"


@dataclasses.dataclass(frozen=True, order=True)
class NodeInstance:
    """Identity of a single incarnation of a daemon."""

    permanent_uuid: str
    instance_seqno: int

    def to_dict(self) -> dict[str, tp.Any]:
        return {"permanent_uuid": self.permanent_uuid, "instance_seqno": self.instance_seqno}

    @classmethod
    def from_dict(cls, data: dict[str, tp.Any]) -> "NodeInstance":
        permanent_uuid = data["permanent_uuid"]
        instance_seqno = data["instance_seqno"]
        if not isinstance(permanent_uuid, str) or not permanent_uuid:
            msg = f"Invalid permanent_uuid: {permanent_uuid!r}"
            raise ValueError(msg)
        if isinstance(instance_seqno, bool) or not isinstance(instance_seqno, int):
            msg = f"Invalid instance_seqno: {instance_seqno!r}"
            raise ValueError(msg)
        return cls(permanent_uuid=permanent_uuid, instance_seqno=instance_seqno)


@dataclasses.dataclass(frozen=True)
class StatusRecord:
    node_instance: NodeInstance
    bound_rpc_addresses: tuple[addresses.HostPort, ...]
    bound_http_addresses: tuple[addresses.HostPort, ...]
    extra: dict[str, tp.Any] = dataclasses.field(default_factory=dict, compare=False)

    @property
    def rpc_hostport(self) -> addresses.HostPort:
        return self.bound_rpc_addresses[0]

    @property
    def http_hostport(self) -> addresses.HostPort:
        return self.bound_http_addresses[0]

    def to_dict(self) -> dict[str, tp.Any]:
        return {
            **self.extra,
            "node_instance": self.node_instance.to_dict(),
            "bound_rpc_addresses": [dataclasses.asdict(a) for a in self.bound_rpc_addresses],
            "bound_http_addresses": [dataclasses.asdict(a) for a in self.bound_http_addresses],
        }


def get_status_file(data_dir: ttypes.FileType, fmt: StatusFormat) -> pl.Path:
    """Return path of the status file for a daemon with the given data dir."""
    return pl.Path(data_dir) / f"{STATUS_FILE_STEM}.{fmt}"


def _parse_hostports(records: tp.Any, key: str) -> tuple[addresses.HostPort, ...]:
    if not isinstance(records, list) or not records:
        msg = f"'{key}' must be a non-empty list"
        raise ValueError(msg)
    first, *others = records
    port = first["port"]
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 65535:
        msg = f"Invalid port in '{key}': {port!r}"
        raise ValueError(msg)
    # Only the first address is used, the others are kept as reported
    return (
        addresses.HostPort(host=str(first["host"]), port=port),
        *(addresses.HostPort(host=str(r["host"]), port=int(r["port"])) for r in others),
    )


def parse_status(data: dict[str, tp.Any]) -> StatusRecord:
    """Create status record out of deserialized status file content."""
    known_keys = ("node_instance", "bound_rpc_addresses", "bound_http_addresses")
    return StatusRecord(
        node_instance=NodeInstance.from_dict(data["node_instance"]),
        bound_rpc_addresses=_parse_hostports(data["bound_rpc_addresses"], "bound_rpc_addresses"),
        bound_http_addresses=_parse_hostports(
            data["bound_http_addresses"], "bound_http_addresses"
        ),
        extra={k: v for k, v in data.items() if k not in known_keys},
    )


def read_status_file(path: ttypes.FileType, fmt: StatusFormat) -> StatusRecord:
    """Read and parse the status file.

    Any failure is fatal, the file is expected to be complete once it exists.
    """
    path = pl.Path(path)
    try:
        content = path.read_bytes()
        if fmt == StatusFormat.CBOR:
            data = cbor2.loads(content)
        else:
            data = json.loads(content.decode("utf-8"))
        if not isinstance(data, dict):
            msg = f"Expected a mapping, got {type(data).__name__}"
            raise TypeError(msg)
        record = parse_status(data)
    except (OSError, ValueError, TypeError, KeyError) as exc:
        msg = f"Failed to read info file from '{path}': {exc}"
        raise errors.CorruptStatusArtifact(msg, path=path) from exc

    LOGGER.debug(f"Instance information from '{path}': {record}")
    return record


def write_status_file(
    path: ttypes.FileType, record: StatusRecord, fmt: StatusFormat
) -> pl.Path:
    """Write the status file atomically.

    The content is written to a temporary file first and then renamed, so a reader never sees
    a partially written file.
    """
    path = pl.Path(path)
    if fmt == StatusFormat.CBOR:
        content = cbor2.dumps(record.to_dict())
    else:
        content = json.dumps(record.to_dict(), indent=4).encode("utf-8")

    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_bytes(content)
    os.replace(tmp_path, path)
    return path


def remove_stale_status_file(path: ttypes.FileType) -> None:
    """Remove status file left over by a previous instance of the daemon."""
    path = pl.Path(path)
    if path.exists():
        LOGGER.info(f"Removing stale status file '{path}'.")
    path.unlink(missing_ok=True)
