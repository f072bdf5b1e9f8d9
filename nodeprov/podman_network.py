"""Management of the podman network that node containers join."""

from __future__ import annotations

import hashlib
import ipaddress
import struct

from nodeprov.base import Cmd, RunError, output, run_error_for

__all__ = [
    "CLUSTER_LABEL_KEY",
    "NODE_ROLE_LABEL_KEY",
    "FIXED_NETWORK_NAME",
    "generate_ula_subnet_from_name",
    "ensure_network",
    "create_network",
    "check_if_network_exists",
    "is_unknown_ipv6_flag_error",
    "is_pool_overlap_error",
]

# applied to each node container for identification
CLUSTER_LABEL_KEY = "io.x-k8s.kind.cluster"
# applied to each node container for categorization by role
NODE_ROLE_LABEL_KEY = "io.x-k8s.kind.role"
# may be overridden by KIND_EXPERIMENTAL_PODMAN_NETWORK
FIXED_NETWORK_NAME = "kind"

_MAX_ATTEMPTS = 5
_META_CHARS = frozenset("\\.+*?()|[]{}^$")


def _quote_meta(text: str) -> str:
    return "".join("\\" + ch if ch in _META_CHARS else ch for ch in text)


def generate_ula_subnet_from_name(name: str, attempt: int) -> str:
    """Derive a /64 subnet in fc00::/8 from ``name`` and the probing attempt."""
    digest = hashlib.sha1(name.encode() + struct.pack("<i", attempt)).digest()
    raw = bytes([0xFC, 0x00]) + digest[2:8] + bytes(8)
    return str(ipaddress.IPv6Network((raw, 64)))


def ensure_network(name: str) -> None:
    """Create the network ``name`` unless it exists, preferring an IPv6 subnet.

    Podman only supports IPv6 networks from version 2.2.0 on; older clients
    get an IPv4-only network.
    """
    if check_if_network_exists(name):
        return

    try:
        create_network(name, generate_ula_subnet_from_name(name, 0))
        return
    except RunError as err:
        if is_unknown_ipv6_flag_error(err):
            create_network(name, "")
            return
        if not is_pool_overlap_error(err):
            raise

    for attempt in range(1, _MAX_ATTEMPTS):
        try:
            create_network(name, generate_ula_subnet_from_name(name, attempt))
            return
        except RunError as err:
            if not is_pool_overlap_error(err):
                raise
    raise RuntimeError("exhausted attempts trying to find a non-overlapping subnet")


def create_network(name: str, ipv6_subnet: str) -> None:
    """Create a bridge network, with the IPv6 subnet when one is given."""
    if not ipv6_subnet:
        Cmd("podman", "network", "create", "-d=bridge", name).run()
        return
    Cmd("podman", "network", "create", "-d=bridge", "--ipv6", "--subnet", ipv6_subnet, name).run()


def check_if_network_exists(name: str) -> bool:
    """Report whether podman can inspect a network called ``name``."""
    try:
        output(Cmd("podman", "network", "inspect", _quote_meta(name)))
    except RunError:
        return False
    return True


def _error_output(err: BaseException | None) -> str | None:
    rerr = run_error_for(err)
    if rerr is None:
        return None
    return rerr.output.decode(errors="replace")


def is_unknown_ipv6_flag_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return text is not None and "unknown flag: --ipv6" in text


def is_pool_overlap_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return text is not None and (
        "is being used by a network interface" in text
        or "is already being used by a cni configuration" in text
    )