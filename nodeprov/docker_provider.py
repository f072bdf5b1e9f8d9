"""Cluster node provider driving the ``docker`` command line client."""

from __future__ import annotations

import logging
from typing import Iterable

from nodeprov import docker_util
from nodeprov.base import Cmd, ContainerNode, ProviderInfo, RunError, output_lines
from nodeprov.docker_network import CLUSTER_LABEL_KEY

__all__ = ["DockerProvider"]

_ENGINE = "docker"


class DockerProvider:
    """Provides cluster nodes as docker containers."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._info: ProviderInfo | None = None

    def __str__(self) -> str:
        return _ENGINE

    def list_clusters(self) -> list[str]:
        """Names of clusters with containers, sorted and unique."""
        cmd = Cmd(
            _ENGINE, "ps", "-a",
            "--filter", f"label={CLUSTER_LABEL_KEY}",
            "--format", f'{{{{.Label "{CLUSTER_LABEL_KEY}"}}}}',
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
        """Force-remove the node containers and their volumes."""
        names = [str(node) for node in nodes]
        if not names:
            return
        try:
            Cmd(_ENGINE, "rm", "-f", "-v", *names).run()
        except RunError as exc:
            raise RuntimeError("failed to delete nodes") from exc

    def node(self, name: str) -> ContainerNode:
        """A handle for the node container called ``name``."""
        return ContainerNode(_ENGINE, name)

    def info(self) -> ProviderInfo:
        """Engine capabilities, queried once and then cached."""
        if self._info is None:
            self._info = docker_util.info()
        return self._info