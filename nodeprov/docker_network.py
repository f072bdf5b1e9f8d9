"""Management of the user-defined docker network that node containers join."""

from __future__ import annotations

import hashlib
import io
import ipaddress
import json
import re
import struct
from dataclasses import dataclass, field
from typing import Any

from nodeprov.base import Cmd, RunError, output, output_lines, run_error_for

__all__ = [
    "CLUSTER_LABEL_KEY",
    "NODE_ROLE_LABEL_KEY",
    "FIXED_NETWORK_NAME",
    "NetworkInspectEntry",
    "generate_ula_subnet_from_name",
    "sort_network_inspect_entries",
    "ensure_network",
    "create_network_no_duplicates",
    "remove_duplicate_networks",
    "create_network",
    "get_default_network_mtu",
    "sorted_networks_with_name",
    "inspect_networks",
    "parse_network_inspect",
    "networks_with_name",
    "check_if_network_exists",
    "is_ipv6_unavailable_error",
    "is_pool_overlap_error",
    "is_network_already_exists_error",
    "is_only_error_no_such_network",
    "delete_networks",
]

# Label applied to each node container for identification.
CLUSTER_LABEL_KEY = "io.x-k8s.kind.cluster"
# Label applied to each node container for categorisation by role.
NODE_ROLE_LABEL_KEY = "io.x-k8s.kind.role"

# Default network name; a user-defined bridge gives containers embedded DNS.
FIXED_NETWORK_NAME = "kind"

_MAX_ATTEMPTS = 5
_META_CHARS = set("\\.+*?()|[]{}^$")
_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class NetworkInspectEntry:
    """The parts of ``docker network inspect`` output used for ordering."""

    id: str
    containers: dict[str, dict[str, str]] = field(default_factory=dict)


def _quote_meta(text: str) -> str:
    return "".join("\\" + ch if ch in _META_CHARS else ch for ch in text)


def _name_filter(name: str) -> str:
    return f"--filter=name=^{_quote_meta(name)}$"


def generate_ula_subnet_from_name(name: str, attempt: int = 0) -> str:
    """Derive an IPv6 /64 subnet in fc00::/8 from a name and probing attempt."""
    digest = hashlib.sha1(name.encode() + struct.pack("<i", attempt)).digest()
    raw = bytes([0xFC, 0x00]) + digest[2:8] + bytes(8)
    return str(ipaddress.IPv6Network((raw, 64)))


def sort_network_inspect_entries(networks: list[NetworkInspectEntry]) -> None:
    """Sort in place: networks with more containers first, then by ID."""
    networks.sort(key=lambda entry: (-len(entry.containers), entry.id))


def _try(fn: Any, *args: Any) -> Exception | None:
    try:
        fn(*args)
    except (RunError, RuntimeError, ValueError) as exc:
        return exc
    return None


def ensure_network(name: str) -> None:
    """Make sure exactly one docker network called ``name`` exists."""
    if remove_duplicate_networks(name):
        return

    subnet = generate_ula_subnet_from_name(name, 0)
    mtu = get_default_network_mtu()
    err = _try(create_network_no_duplicates, name, subnet, mtu)
    if err is None:
        return

    if is_ipv6_unavailable_error(err):
        # IPAM is automatic when only IPv4 is available
        create_network_no_duplicates(name, "", mtu)
        return
    if not is_pool_overlap_error(err):
        raise err
    # another process may have created the network meanwhile
    if check_if_network_exists(name):
        return

    for attempt in range(1, _MAX_ATTEMPTS):
        subnet = generate_ula_subnet_from_name(name, attempt)
        err = _try(create_network_no_duplicates, name, subnet, mtu)
        if err is None:
            return
        if not is_pool_overlap_error(err):
            raise err
        if check_if_network_exists(name):
            return
    raise RuntimeError("exhausted attempts trying to find a non-overlapping subnet")


def create_network_no_duplicates(name: str, ipv6_subnet: str, mtu: int) -> None:
    """Create the network, tolerating a concurrent creator, then dedupe."""
    try:
        create_network(name, ipv6_subnet, mtu)
    except RunError as err:
        if not is_network_already_exists_error(err):
            raise
    remove_duplicate_networks(name)


def remove_duplicate_networks(name: str) -> bool:
    """Delete all but the preferred network named ``name``; report if any exist."""
    networks = sorted_networks_with_name(name)
    if len(networks) > 1:
        try:
            delete_networks(*networks[1:])
        except RunError as err:
            if not is_only_error_no_such_network(err):
                raise
    return bool(networks)


def create_network(name: str, ipv6_subnet: str, mtu: int) -> None:
    """Create a bridge network, optionally with an IPv6 subnet and MTU."""
    args = [
        "network", "create", "-d=bridge",
        "-o", "com.docker.network.bridge.enable_ip_masquerade=true",
    ]
    if mtu > 0:
        args += ["-o", f"com.docker.network.driver.mtu={mtu}"]
    if ipv6_subnet:
        args += ["--ipv6", "--subnet", ipv6_subnet]
    args.append(name)
    Cmd("docker", *args).run()


def get_default_network_mtu() -> int:
    """MTU of the docker default bridge network, or 0 when unknown."""
    cmd = Cmd(
        "docker", "network", "inspect", "bridge",
        "-f", '{{ index .Options "com.docker.network.driver.mtu" }}',
    )
    try:
        lines = output_lines(cmd)
    except RunError:
        return 0
    if len(lines) != 1 or not _INTEGER.fullmatch(lines[0]):
        return 0
    return int(lines[0])


def sorted_networks_with_name(name: str) -> list[str]:
    """IDs of networks called ``name``, in deterministic preference order."""
    ids = networks_with_name(name)
    if len(ids) < 2:
        return ids
    networks = inspect_networks(ids)
    sort_network_inspect_entries(networks)
    return [entry.id for entry in networks]


def inspect_networks(network_ids: list[str]) -> list[NetworkInspectEntry]:
    """Inspect networks, ignoring ones that vanished in the meantime."""
    buffer = io.BytesIO()
    cmd = Cmd("docker", "network", "inspect", *network_ids).set_stdout(buffer)
    try:
        cmd.run()
    except RunError as err:
        if not is_only_error_no_such_network(err):
            raise
    try:
        return parse_network_inspect(buffer.getvalue())
    except ValueError as exc:
        raise RuntimeError("failed to decode networks list") from exc


def parse_network_inspect(data: bytes | str) -> list[NetworkInspectEntry]:
    """Parse the JSON document printed by ``docker network inspect``."""
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ValueError("failed to decode networks list") from exc
    if decoded is None:
        return []
    if not isinstance(decoded, list):
        raise ValueError("failed to decode networks list")
    entries = []
    for item in decoded:
        if not isinstance(item, dict):
            raise ValueError("failed to decode networks list")
        containers = item.get("Containers") or {}
        if not isinstance(containers, dict):
            raise ValueError("failed to decode networks list")
        entries.append(
            NetworkInspectEntry(
                id=item.get("Id") or "",
                containers={k: dict(v or {}) for k, v in containers.items()},
            )
        )
    return entries


def networks_with_name(name: str) -> list[str]:
    """IDs of the networks whose name is exactly ``name``."""
    out = output(Cmd("docker", "network", "ls", _name_filter(name), "--format={{.ID}}"))
    cleaned = out.decode(errors="replace").removesuffix("\n")
    if not cleaned:
        return []
    return cleaned.split("\n")


def check_if_network_exists(name: str) -> bool:
    """Report whether a network called ``name`` is listed."""
    out = output(Cmd("docker", "network", "ls", _name_filter(name), "--format={{.Name}}"))
    return out.decode(errors="replace").startswith(name)


def _error_output(err: BaseException | None) -> str | None:
    rerr = run_error_for(err)
    if rerr is None:
        return None
    return rerr.output.decode(errors="replace")


def is_ipv6_unavailable_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return text is not None and text.startswith(
        "Error response from daemon: Cannot read IPv6 setup for bridge"
    )


def is_pool_overlap_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    if text is None:
        return False
    return (
        text.startswith("Error response from daemon: Pool overlaps with other one on this address space")
        or "networks have overlapping" in text
    )


def is_network_already_exists_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return (
        text is not None
        and text.startswith("Error response from daemon: network with name")
        and "already exists" in text
    )


def is_only_error_no_such_network(err: BaseException | None) -> bool:
    """True if every complete error line of the output is a no-such-network error."""
    rerr = run_error_for(err)
    if rerr is None:
        return False
    # only newline-terminated lines are considered
    complete_lines = rerr.output.decode(errors="replace").split("\n")[:-1]
    for line in complete_lines:
        if line.startswith("Error: No such network:"):
            continue
        if line.startswith("Error: "):
            return False
    return True


def delete_networks(*networks: str) -> None:
    """Remove the given networks."""
    Cmd("docker", "network", "rm", *networks).run()