"""Pool-level sequencing: serial master replacement, bounded-parallel agent replacement."""

from __future__ import annotations

import contextvars
import threading
from concurrent.futures import ThreadPoolExecutor, wait

import structlog

from kube_upgrade_server.errors import NodeOperationError
from kube_upgrade_server.models import DiscoveredNode, PoolRole
from kube_upgrade_server.upgrade.node_upgrader import NodeUpgrader

log = structlog.get_logger()


class _FirstFailure:
    """Single-assignment slot for the first failure observed by any worker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._error: NodeOperationError | None = None
        self.tripped = threading.Event()

    def record(self, error: NodeOperationError) -> bool:
        """Store ``error`` if no failure was recorded yet. Returns True when it was stored."""
        with self._lock:
            if self._error is not None:
                return False
            self._error = error
            self.tripped.set()
            return True

    @property
    def error(self) -> NodeOperationError | None:
        with self._lock:
            return self._error


class PoolUpgrader:
    """Upgrades every node of one pool with the pool's sequencing policy.

    Masters are replaced one at a time in discovery order so the control plane never
    loses more than one member. Agent nodes are replaced by at most ``max_parallel``
    worker threads; after the first failure no new node is started, in-flight nodes
    run to a terminal state, and then that first failure is raised.
    """

    def __init__(self, node_upgrader: NodeUpgrader, max_parallel: int = 3) -> None:
        if max_parallel < 1:
            msg = f"max_parallel must be at least 1, got {max_parallel}."
            raise ValueError(msg)
        self._node_upgrader = node_upgrader
        self._max_parallel = max_parallel

    def upgrade_pool(self, pool_name: str, nodes: list[DiscoveredNode], role: PoolRole) -> None:
        """Upgrade ``nodes``; raise the first NodeOperationError encountered."""
        if not nodes:
            log.info("pool_empty", pool=pool_name)
            return

        log.info("pool_upgrade_started", pool=pool_name, role=role.value, nodes=len(nodes))
        if role is PoolRole.MASTER:
            self._upgrade_serial(nodes)
        else:
            self._upgrade_parallel(pool_name, nodes)
        log.info("pool_upgrade_completed", pool=pool_name)

    def _upgrade_serial(self, nodes: list[DiscoveredNode]) -> None:
        for node in nodes:
            self._node_upgrader.upgrade(node)

    def _upgrade_parallel(self, pool_name: str, nodes: list[DiscoveredNode]) -> None:
        failure = _FirstFailure()

        def worker(node: DiscoveredNode) -> None:
            if failure.tripped.is_set():
                log.info("node_upgrade_not_started", node=node.name, pool=pool_name)
                return
            try:
                self._node_upgrader.upgrade(node)
            except NodeOperationError as e:
                if not failure.record(e):
                    log.warning(
                        "discarded_node_failure",
                        node=node.name,
                        pool=pool_name,
                        operation=e.operation,
                        error=str(e),
                    )
            except BaseException:
                failure.tripped.set()
                raise

        with ThreadPoolExecutor(max_workers=self._max_parallel, thread_name_prefix=f"upgrade-{pool_name}") as executor:
            # Workers inherit the caller's bound structlog context.
            futures = [executor.submit(contextvars.copy_context().run, worker, node) for node in nodes]
            wait(futures)

        # Surface anything other than a node failure (programming errors) unchanged.
        for future in futures:
            exc = future.exception()
            if exc is not None:
                raise exc

        if failure.error is not None:
            raise failure.error
