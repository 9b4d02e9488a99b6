"""Fake coordinator and worker daemon.

Honors the argument contract of the real daemons: binds RPC and web listeners, writes the status
file once they are bound, serves the membership RPC when acting as a coordinator and registers
itself with the first coordinator when acting as a worker.

Behavior can be altered with the `FAKE_DAEMON_MODE` env variable:
* `normal` (default)
* `no_status` - never write the status file
* `exit_early` - exit with `FAKE_DAEMON_EXIT_CODE` (default 3) before writing the status file
* `corrupt_status` - write unparsable status file
* `no_register` - worker never registers with coordinator
"""

import os
import pathlib as pl
import sys


def _base_dir(argv: list[str]) -> pl.Path | None:
    for arg in argv:
        name, __, value = arg.partition("=")
        if name in ("--coordinator_base_dir", "--worker_base_dir"):
            return pl.Path(value)
    return None


# Record pid and command line as soon as possible, tests use them to check the process
BASE_DIR = _base_dir(sys.argv[1:])
if BASE_DIR:
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    (BASE_DIR / "pid").write_text(str(os.getpid()))
    (BASE_DIR / "argv").write_text("\n".join(sys.argv[1:]))

import argparse  # noqa: E402
import http.server  # noqa: E402
import json  # noqa: E402
import threading  # noqa: E402
import time  # noqa: E402
import uuid  # noqa: E402

import requests  # noqa: E402

from external_minicluster.cluster_management import addresses  # noqa: E402
from external_minicluster.cluster_management import status_files  # noqa: E402

MODE = os.environ.get("FAKE_DAEMON_MODE") or "normal"
REGISTER_INTERVAL = 0.05

_registry: dict[str, dict] = {}
_registry_lock = threading.Lock()


def get_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(allow_abbrev=False)
    for name in (
        "coordinator_base_dir",
        "coordinator_rpc_bind_addresses",
        "coordinator_web_port",
        "leader_address",
        "follower_addresses",
        "worker_base_dir",
        "worker_rpc_bind_addresses",
        "worker_web_port",
        "worker_coordinator_addrs",
        "server_dump_info_path",
        "server_dump_info_format",
        "logbuflevel",
        "webserver_interface",
    ):
        parser.add_argument(f"--{name}")
    parser.add_argument("--leader", action="store_true")
    parser.add_argument("--logtostderr", action="store_true")
    # Unknown extra flags are accepted
    args, __ = parser.parse_known_args(argv)
    return args


class RpcHandler(http.server.BaseHTTPRequestHandler):
    def _send_json(self, content: dict) -> None:
        body = json.dumps(content).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/ping":
            self._send_json({})
        elif self.path == "/list-workers":
            with _registry_lock:
                servers = list(_registry.values())
            self._send_json({"servers": servers})
        else:
            self.send_error(404)

    def do_POST(self) -> None:  # noqa: N802
        if self.path != "/register":
            self.send_error(404)
            return
        length = int(self.headers.get("Content-Length") or 0)
        entry = json.loads(self.rfile.read(length))
        with _registry_lock:
            _registry[entry["instance_id"]["permanent_uuid"]] = entry
        self._send_json({})

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        sys.stderr.write(f"fake_daemon: {format % args}\n")


def get_permanent_uuid(base_dir: pl.Path) -> str:
    """Return uuid of the daemon, kept the same across restarts."""
    uuid_file = base_dir / "uuid"
    if uuid_file.exists():
        return uuid_file.read_text().strip()
    permanent_uuid = uuid.uuid4().hex
    uuid_file.write_text(permanent_uuid)
    return permanent_uuid


def serve(server: http.server.HTTPServer) -> None:
    threading.Thread(target=server.serve_forever, daemon=True).start()


def register_forever(coordinator: str, entry: dict) -> None:
    while True:
        try:
            requests.post(f"http://{coordinator}/register", json=entry, timeout=1)
        except requests.RequestException as exc:
            sys.stderr.write(f"fake_daemon: registration failed: {exc}\n")
        time.sleep(REGISTER_INTERVAL)


def main() -> int:
    args = get_args(sys.argv[1:])
    is_coordinator = bool(args.coordinator_base_dir)

    if MODE == "exit_early":
        return int(os.environ.get("FAKE_DAEMON_EXIT_CODE") or 3)

    if MODE == "no_status":
        time.sleep(3600)
        return 0

    status_path = pl.Path(args.server_dump_info_path)
    if MODE == "corrupt_status":
        status_path.write_bytes(b"\x00not a status record")
        time.sleep(3600)
        return 0

    if is_coordinator:
        rpc_bind = addresses.HostPort.parse(args.coordinator_rpc_bind_addresses)
        web_port = int(args.coordinator_web_port)
    else:
        rpc_bind = addresses.HostPort.parse(args.worker_rpc_bind_addresses)
        web_port = int(args.worker_web_port)

    rpc_server = http.server.ThreadingHTTPServer((rpc_bind.host, rpc_bind.port), RpcHandler)
    web_server = http.server.ThreadingHTTPServer(("127.0.0.1", web_port), RpcHandler)
    serve(rpc_server)
    serve(web_server)

    rpc_hostport = addresses.HostPort(host=rpc_bind.host, port=rpc_server.server_address[1])
    http_hostport = addresses.HostPort(host="127.0.0.1", port=web_server.server_address[1])
    node_instance = status_files.NodeInstance(
        permanent_uuid=get_permanent_uuid(pl.Path(BASE_DIR or ".")),
        instance_seqno=time.time_ns() // 1000,
    )
    record = status_files.StatusRecord(
        node_instance=node_instance,
        bound_rpc_addresses=(rpc_hostport,),
        bound_http_addresses=(http_hostport,),
        extra={"role": "coordinator" if is_coordinator else "worker"},
    )

    print(f"fake daemon listening on {rpc_hostport}", flush=True)

    if not is_coordinator and MODE != "no_register":
        entry = {
            "instance_id": node_instance.to_dict(),
            "rpc_addresses": [{"host": rpc_hostport.host, "port": rpc_hostport.port}],
            "http_addresses": [{"host": http_hostport.host, "port": http_hostport.port}],
        }
        coordinator = args.worker_coordinator_addrs.split(",")[0]
        threading.Thread(target=register_forever, args=(coordinator, entry), daemon=True).start()

    status_files.write_status_file(
        status_path, record, fmt=status_files.StatusFormat(args.server_dump_info_format)
    )

    threading.Event().wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
