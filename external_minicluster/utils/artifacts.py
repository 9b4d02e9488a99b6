"""Functionality for collecting testing artifacts."""

import logging
import pathlib as pl
import shutil
import typing as tp

from external_minicluster.cluster_management import daemons
from external_minicluster.utils import helpers

LOGGER = logging.getLogger(__name__)


def save_daemon_artifacts(
    *, save_dir: pl.Path, daemons_list: tp.Iterable[daemons.ExternalDaemon]
) -> pl.Path:
    """Save daemon artifacts (stdout files, status files)."""
    destdir = save_dir / "cluster_artifacts" / helpers.get_timestamped_name()
    destdir.mkdir(parents=True)

    for daemon in daemons_list:
        daemon_dir = destdir / daemon.daemon_id
        daemon_dir.mkdir()
        files_list = [
            *daemon.data_dir.glob("*.stdout"),
            *daemon.data_dir.glob("*.stderr"),
            *daemon.data_dir.glob("*.log"),
            daemon.status_file,
        ]
        for fpath in files_list:
            if not fpath.exists():
                continue
            shutil.copy(fpath, daemon_dir)

    LOGGER.info(f"Cluster artifacts saved to '{destdir}'.")
    return destdir
