"""Errors raised while provisioning and supervising an external cluster."""


class MiniClusterError(Exception):
    pass


class ConfigurationError(MiniClusterError):
    """Invalid cluster configuration, detected before any process is spawned."""


class StartFailure(MiniClusterError):
    """The daemon process could not be started."""


class ProcessExitedEarly(StartFailure):
    """The daemon process exited before it reported readiness."""

    def __init__(self, msg: str, *, exit_code: int) -> None:
        super().__init__(msg)
        self.exit_code = exit_code


class StartupTimeout(StartFailure):
    """The daemon process didn't report readiness in time and was killed."""

    def __init__(self, msg: str, *, timeout: float) -> None:
        super().__init__(msg)
        self.timeout = timeout


class CorruptStatusArtifact(StartFailure):
    """The status file written by the daemon couldn't be parsed."""

    def __init__(self, msg: str, *, path: object) -> None:
        super().__init__(msg)
        self.path = path


class ClusterStartError(MiniClusterError):
    """Starting of a single cluster member failed.

    The original error is available as `__cause__`.
    """

    def __init__(self, msg: str, *, role: str, index: int) -> None:
        super().__init__(msg)
        self.role = role
        self.index = index


class IllegalStateError(MiniClusterError):
    pass


class NotStartedError(IllegalStateError):
    pass


class AlreadyRunningError(IllegalStateError):
    pass


class AlreadyStartedError(IllegalStateError):
    pass


class AddressResolutionError(MiniClusterError):
    pass


class RpcError(MiniClusterError):
    """Call to the coordinator failed on transport level or returned an unusable response."""


class ConvergenceTimeout(MiniClusterError):
    """The coordinator didn't report the expected cluster membership before the deadline."""


class ProcessSignalError(MiniClusterError):
    """Delivering a signal to the daemon process failed."""
