"""MCP server entry point and tool registration."""

from __future__ import annotations

import sys
import time

import structlog
from mcp.server.fastmcp import FastMCP

from kube_upgrade_server.config import get_settings
from kube_upgrade_server.models import scrub_sensitive_values
from kube_upgrade_server.tools.cluster_topology import get_cluster_topology_handler
from kube_upgrade_server.tools.cluster_upgrade import upgrade_cluster_handler
from kube_upgrade_server.tools.upgrade_path import check_upgrade_path_handler

# Configure structlog for JSON output to stderr
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)

log = structlog.get_logger()

mcp = FastMCP("Cluster Upgrade Server")


@mcp.tool()
async def upgrade_cluster(
    subscription_id: str,
    resource_group: str,
    cluster_definition: str,
    name_suffix: str,
    agent_pools: list[str],
    target_version: str | None = None,
    kubeconfig: str | None = None,
    force: bool = False,
) -> str:
    """Upgrade a Kubernetes cluster on Azure VMs by replacing each node with a new VM.

    Masters are replaced one at a time, then the named agent pools are replaced a few
    nodes at a time. Agent pools not listed are left untouched. The run stops at the
    first failing cloud operation and reports the node, pool and operation involved.

    Args:
        subscription_id: Azure subscription ID hosting the cluster.
        resource_group: Resource group containing the cluster's VMs.
        cluster_definition: Path to the YAML cluster definition file.
        name_suffix: Resource name suffix that identifies the cluster's VMs.
        agent_pools: Agent pool names to upgrade.
        target_version: Orchestrator version to install. Defaults to the definition's version.
        kubeconfig: Optional kubeconfig used to drain nodes before replacement.
        force: Re-apply the target version to nodes that already run it.
    """
    start = time.monotonic()
    try:
        result = await upgrade_cluster_handler(
            subscription_id,
            resource_group,
            cluster_definition,
            name_suffix,
            agent_pools,
            target_version,
            kubeconfig,
            force,
        )
        output = scrub_sensitive_values(result.model_dump_json(indent=2))
        log.info(
            "tool_completed",
            tool="upgrade_cluster",
            succeeded=result.succeeded,
            latency_ms=_elapsed_ms(start),
        )
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="upgrade_cluster", error=sanitised)
        raise RuntimeError(sanitised) from None


@mcp.tool()
async def get_cluster_topology(
    subscription_id: str,
    resource_group: str,
    name_suffix: str,
    cluster_definition: str,
) -> str:
    """List a cluster's VMs grouped into the master pool and agent pools.

    Returns each node's pool, index, orchestrator version and how it was classified
    (tag, name or default), plus the lowest version running in the cluster.
    Read-only: use this before an upgrade to see what would be replaced.

    Args:
        subscription_id: Azure subscription ID hosting the cluster.
        resource_group: Resource group containing the cluster's VMs.
        name_suffix: Resource name suffix that identifies the cluster's VMs.
        cluster_definition: Path to the YAML cluster definition file.
    """
    start = time.monotonic()
    try:
        result = await get_cluster_topology_handler(subscription_id, resource_group, name_suffix, cluster_definition)
        output = scrub_sensitive_values(result.model_dump_json(indent=2))
        log.info("tool_completed", tool="get_cluster_topology", latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="get_cluster_topology", error=sanitised)
        raise RuntimeError(sanitised) from None


@mcp.tool()
async def check_upgrade_path(
    current_version: str,
    target_version: str,
    candidate_versions: list[str] | None = None,
    force: bool = False,
) -> str:
    """Check whether a cluster at one orchestrator version may be upgraded to another.

    Patch upgrades and single minor-version steps are allowed. Downgrades, major version
    changes and skipped minor versions are refused unless explicitly allow-listed.
    Optionally filters a list of candidate versions down to the legal upgrade targets.

    Args:
        current_version: Version the cluster runs now (e.g., '1.7.9').
        target_version: Version to upgrade to.
        candidate_versions: Versions to filter into available_upgrades.
        force: Accept re-applying the current version.
    """
    start = time.monotonic()
    try:
        result = await check_upgrade_path_handler(current_version, target_version, candidate_versions, force)
        output = result.model_dump_json(indent=2)
        log.info("tool_completed", tool="check_upgrade_path", latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="check_upgrade_path", error=sanitised)
        raise RuntimeError(sanitised) from None


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


if __name__ == "__main__":
    # Fail fast on malformed UPGRADE_* overrides.
    get_settings()
    mcp.run(transport="stdio")
