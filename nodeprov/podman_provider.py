"""Cluster node provider driving the ``podman`` command line client."""

from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

import semver

from nodeprov import podman_util
from nodeprov.base import Cmd, ContainerNode, ProviderInfo, RunError, output_lines
from nodeprov.podman_network import CLUSTER_LABEL_KEY

__all__ = ["PodmanProvider", "parse_podman_info", "info"]

_ENGINE = "podman"
# podman info lists the cgroup controllers since this version
_CONTROLLERS_VERSION = semver.Version.parse("4.0.0")

_ROOTLESS_WARNING = (
    "Cgroup controller detection is not implemented for Podman. "
    'If you see cgroup-related errors, you might need to set systemd property "Delegate=yes", '
    "see the rootless documentation"
)


@dataclass
class _HostInfo:
    cgroup_version: str = ""
    cgroup_controllers: list[str] = field(default_factory=list)
    rootless: bool = False


def _mapping(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("invalid podman info output: expected a JSON object")
    return value


def _decode_host(data: bytes | str) -> _HostInfo:
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid podman info output") from exc
    host = _mapping(_mapping(decoded).get("host"))

    cgroup_version = host.get("cgroupVersion") or ""
    if not isinstance(cgroup_version, str):
        raise ValueError("invalid podman info output: cgroupVersion is not a string")

    controllers = host.get("cgroupControllers") or []
    if not isinstance(controllers, list) or not all(isinstance(c, str) for c in controllers):
        raise ValueError("invalid podman info output: cgroupControllers is not a list of strings")

    rootless = _mapping(host.get("security")).get("rootless")
    if rootless is None:
        rootless = False
    if not isinstance(rootless, bool):
        raise ValueError("invalid podman info output: rootless is not a boolean")

    return _HostInfo(cgroup_version, list(controllers), rootless)


def _build_info(host: _HostInfo, version: semver.Version) -> ProviderInfo:
    # before controller details were listed, assume every controller exists
    if version >= _CONTROLLERS_VERSION:
        controllers = set(host.cgroup_controllers)
        memory = "memory" in controllers
        pids = "pids" in controllers
        cpu = "cpu" in controllers
    else:
        memory = pids = cpu = True
    return ProviderInfo(
        rootless=host.rootless,
        cgroup2=host.cgroup_version == "v2",
        supports_memory_limit=memory,
        supports_pids_limit=pids,
        supports_cpu_shares=cpu,
    )


def parse_podman_info(data: bytes | str, version: semver.Version) -> ProviderInfo:
    """Build a ProviderInfo from ``podman info --format json`` output.

    ``version`` is the podman version that produced the output; it decides
    whether the listed cgroup controllers can be trusted.
    """
    return _build_info(_decode_host(data), version)


def info(logger: logging.Logger | None = None) -> ProviderInfo:
    """Query podman for its capabilities."""
    args = ["info", "--format", "json"]
    buffer = io.BytesIO()
    try:
        Cmd(_ENGINE, *args).set_stdout(buffer).run()
    except RunError as exc:
        captured = buffer.getvalue().decode(errors="replace")
        raise RuntimeError(
            f"failed to get podman info ({_ENGINE} {' '.join(args)}): {json.dumps(captured)}"
        ) from exc
    host = _decode_host(buffer.getvalue())

    try:
        version = podman_util.get_podman_version()
    except (RunError, RuntimeError, ValueError) as exc:
        raise RuntimeError("failed to check podman version") from exc

    result = _build_info(host, version)
    if result.rootless and version < _CONTROLLERS_VERSION and logger is not None:
        logger.warning(_ROOTLESS_WARNING)
    return result


class PodmanProvider:
    """Provides cluster nodes as podman containers."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.logger.warning("enabling experimental podman provider")
        self._info: ProviderInfo | None = None

    def __str__(self) -> str:
        return _ENGINE

    def list_clusters(self) -> list[str]:
        """Names of clusters with containers, sorted and unique."""
        cmd = Cmd(
            _ENGINE, "ps", "-a",
            "--filter", f"label={CLUSTER_LABEL_KEY}",
            "--format", f'{{{{index .Labels "{CLUSTER_LABEL_KEY}"}}}}',
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise RuntimeError("failed to list clusters") from exc
        return sorted(set(lines))

    def list_nodes(self, cluster: str) -> list[ContainerNode]:
        """Node handles for every container of ``cluster``, running or not."""
        cmd = Cmd(
            _ENGINE, "ps", "-a",
            "--filter", f"label={CLUSTER_LABEL_KEY}={cluster}",
            "--format", "{{.Names}}",
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise RuntimeError("failed to list nodes") from exc
        return [self.node(name) for name in lines]

    def delete_nodes(self, nodes: Iterable[ContainerNode]) -> None:
        """Force-remove the node containers, then the volumes labelled for them."""
        names = [str(node) for node in nodes]
        if not names:
            return
        try:
            Cmd(_ENGINE, "rm", "-f", "-v", *names).run()
        except RunError as exc:
            raise RuntimeError("failed to delete nodes") from exc
        volumes = [volume for name in names for volume in podman_util.get_volumes(name)]
        if volumes:
            podman_util.delete_volumes(volumes)

    def node(self, name: str) -> ContainerNode:
        """A handle for the node container called ``name``."""
        return ContainerNode(_ENGINE, name)

    def info(self) -> ProviderInfo:
        """Engine capabilities, queried once and then cached."""
        if self._info is None:
            self._info = info(self.logger)
        return self._info