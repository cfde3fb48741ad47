"""Shared helpers for parsing ARM resource identifiers and disk URIs."""

from __future__ import annotations

from urllib.parse import urlparse


def resource_name_from_id(resource_id: str) -> str:
    """Return the last path segment of an ARM resource ID (the resource's name)."""
    return resource_id.rstrip("/").rsplit("/", 1)[-1]


def parse_vhd_uri(vhd_uri: str) -> tuple[str, str, str]:
    """Split an unmanaged OS disk URI into (storage account, container, blob name).

    ``https://acct.blob.core.windows.net/vhds/k8s-master-0-osdisk.vhd`` becomes
    ``("acct", "vhds", "k8s-master-0-osdisk.vhd")``.

    Raises:
        ValueError: If the URI is not a blob URI with a container and blob path.
    """
    parsed = urlparse(vhd_uri)
    host = parsed.hostname or ""
    parts = parsed.path.lstrip("/").split("/", 1)
    if not host or len(parts) != 2 or not parts[0] or not parts[1]:
        msg = f"Invalid VHD URI: {vhd_uri!r}"
        raise ValueError(msg)
    account = host.split(".", 1)[0]
    return account, parts[0], parts[1]
