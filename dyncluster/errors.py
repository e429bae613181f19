"""Exceptions raised by the dyncluster daemon.

Callers that only care about "something in dyncluster failed" can catch
:class:`DynClusterError`; the REST layer maps the concrete types to status
codes.
"""


class DynClusterError(Exception):
    """Base error type for daemon-level failures."""


class ClusterNotFoundError(DynClusterError, KeyError):
    """
    Raised when a cluster id is not in the registry, or is not visible to
    the acting identity.

    A kill that races another kill of the same cluster ends here too, so a
    stale id is always reported rather than crashing the caller.
    """

    def __init__(self, cluster_id: str):
        super().__init__(cluster_id)
        self.cluster_id = cluster_id

    def __str__(self) -> str:
        return f"cluster '{self.cluster_id}' not found"


class NotOwnerError(DynClusterError, PermissionError):
    """Raised when a non-system actor touches a cluster it does not own."""

    def __init__(self, cluster_id: str, identity: str):
        super().__init__(f"'{identity}' does not own cluster '{cluster_id}'")
        self.cluster_id = cluster_id
        self.identity = identity


class StoreClosedError(DynClusterError):
    """Raised when the registry is used before open() or after close()."""


class EngineError(DynClusterError):
    """Raised when the container engine rejects or fails a request."""


class StartupError(DynClusterError):
    """Raised when the daemon cannot acquire a dependency it needs to run."""
