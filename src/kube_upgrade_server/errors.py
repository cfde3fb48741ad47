"""Exception types raised by the upgrade orchestrator."""

from __future__ import annotations

# Prefix applied to failures raised while querying the live cluster state.
QUERY_ERROR_PREFIX = "Error while querying ARM for resources"


class UpgradeError(Exception):
    """Base class for every fatal upgrade failure."""


class VersionIncompatibleError(UpgradeError):
    """The requested target version is not a supported transition from the current one.

    Raised before any cloud resource is mutated.
    """

    def __init__(self, message: str, current: str | None = None, target: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.target = target


class DiscoveryError(UpgradeError):
    """Listing the cluster's VMs failed. Raised before any pool is processed."""

    def __init__(self, cause_message: str) -> None:
        super().__init__(f"{QUERY_ERROR_PREFIX}: {cause_message}")
        self.cause_message = cause_message


class NodeOperationError(UpgradeError):
    """One cloud operation failed while replacing a node.

    ``str()`` is the cloud operation's own message so operators can map it directly to
    the failing resource action.
    """

    def __init__(self, operation: str, message: str, node: str | None = None, pool: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.node = node
        self.pool = pool
