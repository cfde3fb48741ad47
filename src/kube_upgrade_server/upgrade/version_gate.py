"""Pre-flight check that the requested orchestrator version is a supported upgrade."""

from __future__ import annotations

import semantic_version
import structlog

from kube_upgrade_server.errors import VersionIncompatibleError

log = structlog.get_logger()


def parse_version(version: str) -> semantic_version.Version:
    """Parse ``1.7.9`` or ``v1.7.9`` into a semantic version.

    Raises:
        VersionIncompatibleError: If the string is not a version.
    """
    try:
        return semantic_version.Version.coerce(version.strip().lstrip("v"))
    except ValueError:
        msg = f"Invalid orchestrator version: {version!r}"
        raise VersionIncompatibleError(msg) from None


def normalize_transition(current: str, target: str) -> tuple[str, str]:
    """Canonical ``(current, target)`` pair, so ``1.7`` and ``v1.7.0`` match ``1.7.0``."""
    return str(parse_version(current)), str(parse_version(target))


class VersionGate:
    """Validates (current, target) orchestrator version transitions.

    Allowed: a newer patch of the same minor release, or any release of the next minor
    version. Downgrades, major version changes and multi-minor skips are refused unless
    the exact pair is listed in ``allowed_transitions``. Re-applying the current version
    is refused unless ``force`` is set.
    """

    def __init__(
        self,
        orchestrator_type: str = "Kubernetes",
        allowed_transitions: frozenset[tuple[str, str]] = frozenset(),
        force: bool = False,
    ) -> None:
        self._orchestrator_type = orchestrator_type
        self._allowed_transitions = frozenset(normalize_transition(cur, tgt) for cur, tgt in allowed_transitions)
        self._force = force

    def check(self, current: str, target: str) -> str | None:
        """Return the reason the transition is refused, or None when it is allowed."""
        cur = parse_version(current)
        tgt = parse_version(target)

        if (str(cur), str(tgt)) in self._allowed_transitions:
            return None
        if tgt < cur:
            return "downgrades are not supported"
        if tgt == cur:
            return None if self._force else "cluster already runs this version"
        if tgt.major != cur.major:
            return "major version upgrades are not supported"
        if tgt.minor - cur.minor > 1:
            return "upgrades may not skip a minor version"
        return None

    def validate(self, current: str, target: str) -> None:
        """Raise VersionIncompatibleError when ``current`` cannot be upgraded to ``target``."""
        reason = self.check(current, target)
        if reason is None:
            return
        msg = f"{self._orchestrator_type}:{current} cannot be upgraded to {target}: {reason}"
        log.warning("upgrade_version_refused", current=current, target=target, reason=reason)
        raise VersionIncompatibleError(msg, current=current, target=target)

    def upgrade_versions(self, current: str, candidates: list[str]) -> list[str]:
        """Return the candidates that are legal targets from ``current``, in ascending order."""
        allowed = [v for v in candidates if self.check(current, v) is None]
        return sorted(allowed, key=parse_version)
