"""Probing the docker engine for features that affect node containers."""

from __future__ import annotations

import csv
import io
import json
from typing import Any

from nodeprov.base import Cmd, ProviderInfo, RunError, output, output_lines

__all__ = [
    "is_available",
    "userns_remap",
    "mount_dev_mapper",
    "backing_filesystem_needs_dev_mapper",
    "mount_fuse",
    "parse_docker_info",
    "info",
]

_DEV_MAPPER_DRIVERS = frozenset({"btrfs", "zfs", "devicemapper"})
_DEV_MAPPER_BACKING = frozenset({"btrfs", "zfs", "xfs"})


def is_available() -> bool:
    """Report whether a working docker client is on the system."""
    try:
        lines = output_lines(Cmd("docker", "-v"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    return lines[0].startswith("Docker version")


def userns_remap() -> bool:
    """Report whether user namespace remapping is enabled in dockerd."""
    cmd = Cmd("docker", "info", "--format", "'{{json .SecurityOptions}}'")
    try:
        lines = output_lines(cmd)
    except RunError:
        return False
    return bool(lines) and "name=userns" in lines[0]


def _driver_needs_dev_mapper(driver: str) -> bool:
    return driver.strip().lower() in _DEV_MAPPER_DRIVERS


def backing_filesystem_needs_dev_mapper(driver: str, driver_status_json: str) -> bool:
    """Decide from the storage driver and its status whether /dev/mapper is needed.

    ``driver_status_json`` is the output of ``docker info -f '{{json .DriverStatus}}'``,
    a list of ``[key, value]`` pairs.
    """
    storage = driver.strip().lower()
    if storage in _DEV_MAPPER_DRIVERS:
        return True
    try:
        status = json.loads(driver_status_json)
    except ValueError:
        return False
    if status is None:
        status = []
    if not isinstance(status, list):
        return False
    for item in status:
        if item is None:
            item = []
        if not isinstance(item, list) or not all(isinstance(part, str) for part in item):
            return False
    for item in status:
        if len(item) >= 2 and item[0] == "Backing Filesystem":
            storage = item[1].lower()
            break
    return storage in _DEV_MAPPER_BACKING


def mount_dev_mapper() -> bool:
    """Report whether docker storage sits on Btrfs, ZFS, devicemapper or XFS."""
    try:
        lines = output_lines(Cmd("docker", "info", "-f", "{{.Driver}}"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    driver = lines[0]
    if _driver_needs_dev_mapper(driver):
        return True
    try:
        lines = output_lines(Cmd("docker", "info", "-f", "{{json .DriverStatus }}"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    return backing_filesystem_needs_dev_mapper(driver, lines[0])


def mount_fuse() -> bool:
    """Report whether /dev/fuse must be passed in (rootless docker)."""
    try:
        return info().rootless
    except (RuntimeError, ValueError):
        return False


def _as_bool(value: Any) -> bool:
    return value is True


def parse_docker_info(data: bytes | str) -> ProviderInfo:
    """Build a ProviderInfo from ``docker info --format '{{json .}}'`` output."""
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid docker info output") from exc
    if decoded is None:
        decoded = {}
    if not isinstance(decoded, dict):
        raise ValueError("invalid docker info output")

    result = ProviderInfo(cgroup2=decoded.get("CgroupVersion") == "2")
    # with no cgroup driver the limit flags are meaningless
    if decoded.get("CgroupDriver") != "none":
        result.supports_memory_limit = _as_bool(decoded.get("MemoryLimit"))
        result.supports_pids_limit = _as_bool(decoded.get("PidsLimit"))
        result.supports_cpu_shares = _as_bool(decoded.get("CPUShares"))

    options = decoded.get("SecurityOptions") or []
    if not isinstance(options, list):
        raise ValueError("invalid docker info output")
    for option in options:
        if not isinstance(option, str):
            raise ValueError("invalid docker info output")
        # options look like "name=seccomp,profile=default" or "name=rootless"
        for row in csv.reader(io.StringIO(option)):
            if "name=rootless" in row:
                result.rootless = True
    return result


def info() -> ProviderInfo:
    """Query docker for its capabilities."""
    try:
        out = output(Cmd("docker", "info", "--format", "{{json .}}"))
    except RunError as exc:
        raise RuntimeError("failed to get docker info") from exc
    return parse_docker_info(out)