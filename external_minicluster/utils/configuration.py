"""Cluster and test environment configuration."""

import os
import pathlib as pl

IS_XDIST = bool(os.environ.get("PYTEST_XDIST_TESTRUNUID"))

COORDINATOR_BINARY = os.environ.get("COORDINATOR_BINARY") or "cluster-coordinator"
WORKER_BINARY = os.environ.get("WORKER_BINARY") or "cluster-worker"

# Resolve MINICLUSTER_BIN_PATH
BIN_PATH: str | pl.Path = os.environ.get("MINICLUSTER_BIN_PATH") or ""
if BIN_PATH:
    BIN_PATH = pl.Path(BIN_PATH).expanduser().resolve()

# Resolve MINICLUSTER_DATA_ROOT
DATA_ROOT: str | pl.Path = os.environ.get("MINICLUSTER_DATA_ROOT") or ""
if DATA_ROOT:
    DATA_ROOT = pl.Path(DATA_ROOT).expanduser().resolve()

# Interface the daemons bind their RPC listeners to
BIND_HOST = os.environ.get("BIND_HOST") or "127.0.0.1"

# Seconds to wait for the spawned process to write its status file
PROCESS_START_TIMEOUT = float(os.environ.get("PROCESS_START_TIMEOUT") or 10.0)
PROCESS_START_POLL_INTERVAL = float(os.environ.get("PROCESS_START_POLL_INTERVAL") or 0.01)
if PROCESS_START_TIMEOUT <= 0 or PROCESS_START_POLL_INTERVAL <= 0:
    msg = (
        f"Invalid PROCESS_START_TIMEOUT '{PROCESS_START_TIMEOUT}' or "
        f"PROCESS_START_POLL_INTERVAL '{PROCESS_START_POLL_INTERVAL}': must be > 0"
    )
    raise RuntimeError(msg)

# Seconds to wait for all workers to register with the leader coordinator
WORKER_REGISTRATION_TIMEOUT = float(os.environ.get("WORKER_REGISTRATION_TIMEOUT") or 10.0)
REGISTRATION_POLL_INTERVAL = float(os.environ.get("REGISTRATION_POLL_INTERVAL") or 0.001)
if WORKER_REGISTRATION_TIMEOUT <= 0:
    msg = f"Invalid WORKER_REGISTRATION_TIMEOUT '{WORKER_REGISTRATION_TIMEOUT}': must be > 0"
    raise RuntimeError(msg)

STATUS_DUMP_FORMAT = os.environ.get("STATUS_DUMP_FORMAT") or "json"
if STATUS_DUMP_FORMAT not in ("json", "cbor"):
    msg = f"Invalid STATUS_DUMP_FORMAT: {STATUS_DUMP_FORMAT}"
    raise RuntimeError(msg)

# Data directories are kept after `cleanup()` for post-mortem inspection
KEEP_CLUSTER_DATA = bool(os.environ.get("KEEP_CLUSTER_DATA"))
