"""check_upgrade_path — evaluate a version transition without touching the cluster."""

from __future__ import annotations

from datetime import UTC, datetime

from kube_upgrade_server.config import get_settings
from kube_upgrade_server.models import UpgradePathOutput
from kube_upgrade_server.upgrade.version_gate import VersionGate
from kube_upgrade_server.validation import validate_version


async def check_upgrade_path_handler(
    current_version: str,
    target_version: str,
    candidate_versions: list[str] | None = None,
    force: bool = False,
) -> UpgradePathOutput:
    """Core handler for check_upgrade_path."""
    validate_version(current_version)
    validate_version(target_version)
    for candidate in candidate_versions or []:
        validate_version(candidate)

    gate = VersionGate(allowed_transitions=get_settings().allowed_transitions, force=force)
    reason = gate.check(current_version, target_version)

    if reason is None:
        summary = f"{current_version} can be upgraded to {target_version}"
    else:
        summary = f"{current_version} cannot be upgraded to {target_version}: {reason}"

    return UpgradePathOutput(
        current_version=current_version,
        target_version=target_version,
        allowed=reason is None,
        reason=reason,
        available_upgrades=gate.upgrade_versions(current_version, candidate_versions or []),
        summary=summary,
        timestamp=datetime.now(tz=UTC).isoformat(),
    )
