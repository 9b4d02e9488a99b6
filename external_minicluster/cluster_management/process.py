"""Thin wrapper around a single OS process."""

import logging
import os
import pathlib as pl
import signal
import subprocess
import typing as tp

from external_minicluster.cluster_management import errors
from external_minicluster.utils import types as ttypes

LOGGER = logging.getLogger(__name__)


class ProcessHandle:
    """A subprocess that can be started, polled, signalled and reaped.

    `argv[0]` is passed to the process as its program name, the binary itself is `exe`.
    Standard output of the process is not shared with the parent, it is written to
    `stdout_file`. Standard error is inherited.
    """

    def __init__(
        self,
        exe: ttypes.FileType,
        argv: tp.Sequence[str],
        *,
        stdout_file: ttypes.FileType,
        env: dict[str, str] | None = None,
    ) -> None:
        self.exe = pl.Path(exe)
        self.argv = list(argv)
        self.stdout_file = pl.Path(stdout_file)
        self.env = env
        self._popen: subprocess.Popen | None = None
        self._stdout_fp: tp.IO[bytes] | None = None

    @property
    def pid(self) -> int:
        if self._popen is None:
            msg = f"Process '{self.exe}' was not started."
            raise errors.NotStartedError(msg)
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        if self._popen is None:
            return None
        return self._popen.returncode

    def start(self) -> None:
        if self._popen is not None:
            msg = f"Process '{self.exe}' already started as pid {self._popen.pid}."
            raise errors.AlreadyRunningError(msg)

        self.stdout_file.parent.mkdir(parents=True, exist_ok=True)
        stdout_fp = open(self.stdout_file, "ab")  # noqa: SIM115
        try:
            self._popen = subprocess.Popen(
                self.argv,
                executable=self.exe,
                stdin=subprocess.DEVNULL,
                stdout=stdout_fp,
                env=self.env,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            stdout_fp.close()
            msg = f"Failed to start subprocess '{self.exe}': {exc}"
            raise errors.StartFailure(msg) from exc
        self._stdout_fp = stdout_fp

    def poll(self) -> int | None:
        """Return exit code if the process has exited, `None` if it is still running.

        Doesn't block.
        """
        if self._popen is None:
            msg = f"Process '{self.exe}' was not started."
            raise errors.NotStartedError(msg)
        rc = self._popen.poll()
        if rc is not None:
            self._close_stdout()
        return rc

    def is_running(self) -> bool:
        return self._popen is not None and self.poll() is None

    def send_signal(self, sig: int) -> None:
        """Send signal to the process.

        Raises `ProcessLookupError` when the process doesn't exist anymore.
        """
        if self._popen is None:
            msg = f"Process '{self.exe}' was not started."
            raise errors.NotStartedError(msg)
        if self._popen.returncode is not None:
            msg = f"Process '{self.exe}' with pid {self._popen.pid} was already reaped."
            raise ProcessLookupError(msg)
        os.kill(self._popen.pid, sig)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> int:
        """Block until the process exits and is reaped, return its exit code."""
        if self._popen is None:
            msg = f"Process '{self.exe}' was not started."
            raise errors.NotStartedError(msg)
        rc = self._popen.wait(timeout=timeout)
        self._close_stdout()
        return rc

    def _close_stdout(self) -> None:
        if self._stdout_fp is not None:
            self._stdout_fp.close()
            self._stdout_fp = None
