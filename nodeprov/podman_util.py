"""Probing podman and managing the volumes that node containers use."""

from __future__ import annotations

import json
from typing import Any

import semver

from nodeprov.base import Cmd, RunError, output, output_lines

__all__ = [
    "MIN_SUPPORTED_VERSION",
    "is_available",
    "parse_podman_version",
    "get_podman_version",
    "ensure_min_version",
    "create_anonymous_volume",
    "get_volumes",
    "delete_volumes",
    "storage_needs_dev_mapper",
    "mount_dev_mapper",
    "mount_fuse",
]

MIN_SUPPORTED_VERSION = "1.8.0"

_DEV_MAPPER_DRIVERS = frozenset({"btrfs", "zfs", "devicemapper"})
_DEV_MAPPER_BACKING = frozenset({"btrfs", "xfs", "zfs"})


def is_available() -> bool:
    """Report whether a working podman client is on the system."""
    try:
        lines = output_lines(Cmd("podman", "-v"))
    except RunError:
        return False
    return len(lines) == 1 and lines[0].startswith("podman version")


def parse_podman_version(line: str) -> semver.Version:
    """Parse a ``podman version X.Y.Z`` line into a semantic version."""
    parts = line.split(" ")
    if len(parts) != 3:
        raise ValueError(f'podman --version contents should have 3 parts, got "{line}"')
    return semver.Version.parse(parts[2])


def get_podman_version() -> semver.Version:
    """Ask podman for its version."""
    lines = output_lines(Cmd("podman", "--version"))
    if len(lines) != 1:
        raise RuntimeError(f"podman version should only be one line, got {len(lines)}")
    return parse_podman_version(lines[0])


def ensure_min_version() -> semver.Version:
    """Check that podman is recent enough and return its version."""
    try:
        version = get_podman_version()
    except (RunError, RuntimeError, ValueError) as exc:
        raise RuntimeError("failed to check podman version") from exc
    if version < semver.Version.parse(MIN_SUPPORTED_VERSION):
        raise RuntimeError(
            f'podman version "{version}" is too old, '
            f'please upgrade to "{MIN_SUPPORTED_VERSION}" or later'
        )
    return version


def create_anonymous_volume(label: str) -> str:
    """Create a volume labelled ``<label>=true`` and return its name."""
    out = output(Cmd("podman", "volume", "create", "--label", f"{label}=true"))
    return out.decode(errors="replace").removesuffix("\n")


def get_volumes(label: str) -> list[str]:
    """Names of the volumes carrying the label key ``label``."""
    out = output(Cmd("podman", "volume", "ls", "--filter", f"label={label}", "--quiet"))
    text = out.decode(errors="replace")
    if not text:
        return []
    return text.removesuffix("\n").split("\n")


def delete_volumes(names: list[str]) -> None:
    """Force-remove the named volumes."""
    Cmd("podman", "volume", "rm", "--force", *names).run()


def _mapping(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a JSON object")
    return value


def _string(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError("expected a JSON string")
    return value


def storage_needs_dev_mapper(data: bytes | str) -> bool:
    """Decide from ``podman info --format json`` whether /dev/mapper is needed."""
    try:
        store = _mapping(_mapping(json.loads(data)).get("store"))
        driver = _string(store.get("graphDriverName"))
        backing = _string(_mapping(store.get("graphStatus")).get("Backing Filesystem"))
    except ValueError:
        return False
    return driver in _DEV_MAPPER_DRIVERS or backing in _DEV_MAPPER_BACKING


def mount_dev_mapper() -> bool:
    """Report whether podman storage sits on Btrfs, ZFS, devicemapper or XFS."""
    try:
        out = output(Cmd("podman", "info", "--format", "json"))
    except RunError:
        return False
    return storage_needs_dev_mapper(out)


def _rootless() -> bool:
    out = output(Cmd("podman", "info", "--format", "json"))
    host = _mapping(_mapping(json.loads(out)).get("host"))
    rootless = _mapping(host.get("security")).get("rootless", False)
    if rootless is None:
        rootless = False
    if not isinstance(rootless, bool):
        raise ValueError("expected a JSON boolean")
    get_podman_version()
    return rootless


def mount_fuse() -> bool:
    """Report whether /dev/fuse must be passed in (rootless podman)."""
    try:
        return _rootless()
    except (RunError, RuntimeError, ValueError):
        return False