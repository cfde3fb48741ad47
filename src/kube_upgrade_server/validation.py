"""Input validation helpers for upgrade requests."""

from __future__ import annotations

import re

# ARM resource group: 1-90 chars of alphanumerics, underscore, hyphen, period, parentheses; no trailing period
_RESOURCE_GROUP_RE = re.compile(r"^[\w\-.()]{0,89}[\w\-()]$")

# Agent pool: lowercase alphanumeric, 1-12 chars, starts with letter
_AGENT_POOL_RE = re.compile(r"^[a-z][a-z0-9]{0,11}$")

_NAME_SUFFIX_RE = re.compile(r"^[A-Za-z0-9]{1,24}$")

_VERSION_RE = re.compile(r"^v?\d+\.\d+\.\d+([-+][\w.\-+]*)?$")


def validate_resource_group(resource_group: str) -> None:
    """Validate an ARM resource group name."""
    if not _RESOURCE_GROUP_RE.match(resource_group):
        msg = f"Invalid resource group: {resource_group!r}."
        raise ValueError(msg)


def validate_agent_pool(pool_name: str) -> None:
    """Validate an agent pool name."""
    if not _AGENT_POOL_RE.match(pool_name):
        msg = f"Invalid agent pool name: {pool_name!r}. Must be 1-12 lowercase alphanumeric starting with a letter."
        raise ValueError(msg)


def validate_name_suffix(name_suffix: str) -> None:
    """Validate the deterministic suffix used to name cluster resources."""
    if not _NAME_SUFFIX_RE.match(name_suffix):
        msg = f"Invalid name suffix: {name_suffix!r}. Must be 1-24 alphanumeric characters."
        raise ValueError(msg)


def validate_version(version: str) -> None:
    """Validate a major.minor.patch version string (optional leading 'v')."""
    if not _VERSION_RE.match(version):
        msg = f"Invalid version: {version!r}. Expected major.minor.patch."
        raise ValueError(msg)
