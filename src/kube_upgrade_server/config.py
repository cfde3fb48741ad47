"""Upgrade settings, environment variable overrides, and cluster definition loading."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kube_upgrade_server.errors import VersionIncompatibleError
from kube_upgrade_server.models import ContainerService
from kube_upgrade_server.upgrade.version_gate import normalize_transition


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _parse_transitions(raw: str) -> frozenset[tuple[str, str]]:
    """Parse ``"1.7.9->1.9.0,1.8.1->1.10.0"`` into a set of (current, target) pairs."""
    pairs: set[tuple[str, str]] = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        current, sep, target = item.partition("->")
        if not sep or not current.strip() or not target.strip():
            msg = f"Invalid transition {item!r} in UPGRADE_ALLOWED_TRANSITIONS. Expected 'current->target'."
            raise ValueError(msg)
        try:
            pairs.add(normalize_transition(current, target))
        except VersionIncompatibleError as e:
            msg = f"Invalid transition {item!r} in UPGRADE_ALLOWED_TRANSITIONS: {e}"
            raise ValueError(msg) from e
    return frozenset(pairs)


@dataclass(frozen=True)
class UpgradeSettings:
    """Orchestration knobs with environment variable overrides."""

    agent_pool_parallelism: int = field(
        default_factory=lambda: int(os.environ.get("UPGRADE_AGENT_POOL_PARALLELISM", "3"))
    )
    drain_enabled: bool = field(default_factory=lambda: _env_bool("UPGRADE_DRAIN_ENABLED", "false"))
    drain_grace_seconds: int = field(default_factory=lambda: int(os.environ.get("UPGRADE_DRAIN_GRACE_SECONDS", "30")))
    allowed_transitions: frozenset[tuple[str, str]] = field(
        default_factory=lambda: _parse_transitions(os.environ.get("UPGRADE_ALLOWED_TRANSITIONS", ""))
    )

    def __post_init__(self) -> None:
        if self.agent_pool_parallelism < 1:
            msg = f"agent_pool_parallelism must be at least 1, got {self.agent_pool_parallelism}."
            raise ValueError(msg)


def get_settings() -> UpgradeSettings:
    """Return upgrade settings with environment variable overrides applied."""
    return UpgradeSettings()


def load_cluster_definition(path: Path | str) -> ContainerService:
    """Parse a YAML cluster definition file into a ContainerService.

    The file must contain a top-level ``cluster`` mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the content is malformed or fails model validation.
    """
    path = Path(path)
    if not path.exists():
        msg = f"Cluster definition file not found: {path}."
        raise FileNotFoundError(msg)

    raw: Any = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict) or not isinstance(raw.get("cluster"), dict):
        msg = f"Cluster definition file {path} must contain a top-level 'cluster' mapping."
        raise ValueError(msg)

    try:
        return ContainerService.model_validate(raw["cluster"])
    except ValidationError as e:
        msg = f"Cluster definition file {path} is invalid: {e}"
        raise ValueError(msg) from e


_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def validate_subscription_id(subscription_id: str) -> None:
    """Reject placeholder or malformed subscription IDs.

    Raises:
        ValueError: If the value is a ``<placeholder>`` or not a UUID.
    """
    if subscription_id.startswith("<") and subscription_id.endswith(">"):
        msg = "Placeholder subscription_id detected. Fill in the real subscription ID."
        raise ValueError(msg)
    if not _UUID_RE.match(subscription_id):
        msg = f"subscription_id is not a valid UUID: {subscription_id!r}"
        raise ValueError(msg)
