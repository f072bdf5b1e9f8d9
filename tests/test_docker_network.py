import json
import subprocess

import pytest

from nodeprov.base import RunError
from nodeprov.docker_network import (
    NetworkInspectEntry,
    check_if_network_exists,
    create_network,
    ensure_network,
    get_default_network_mtu,
    generate_ula_subnet_from_name,
    is_ipv6_unavailable_error,
    is_network_already_exists_error,
    is_only_error_no_such_network,
    is_pool_overlap_error,
    networks_with_name,
    parse_network_inspect,
    remove_duplicate_networks,
    sort_network_inspect_entries,
)


class FakeDocker:
    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def __call__(self, argv, **kwargs):
        args = list(argv[1:])
        self.calls.append(args)
        rc, out, err = self.handler(args)
        return subprocess.CompletedProcess(argv, rc, stdout=out, stderr=err)

    def calls_starting(self, *prefix):
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]


def install(monkeypatch, handler):
    fake = FakeDocker(handler)
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


@pytest.mark.parametrize(
    "name,attempt,subnet",
    [
        ("kind", 0, "fc00:f853:ccd:e793::/64"),
        ("foo", 1, "fc00:8edf:7f02:ec8f::/64"),
        ("foo", 2, "fc00:9968:306b:2c65::/64"),
        ("kind2", 0, "fc00:444c:147a:44ab::/64"),
        ("kin", 0, "fc00:fcd9:c2be:8e23::/64"),
        ("mysupernetwork", 0, "fc00:7ae1:1e0d:b4d4::/64"),
    ],
)
def test_generate_ula_subnet_from_name(name, attempt, subnet):
    assert generate_ula_subnet_from_name(name, attempt) == subnet


def test_sort_simple_id():
    networks = [
        NetworkInspectEntry("dc7f897c237215c3b73d2c9ba1d4e116d872793a6c1c0e5bf083762998de8b4e"),
        NetworkInspectEntry("1ed9912325a0d08594ee786de91ebd961e631643877b5ee58ec906b640813eae"),
    ]
    sort_network_inspect_entries(networks)
    assert networks == [
        NetworkInspectEntry("1ed9912325a0d08594ee786de91ebd961e631643877b5ee58ec906b640813eae"),
        NetworkInspectEntry("dc7f897c237215c3b73d2c9ba1d4e116d872793a6c1c0e5bf083762998de8b4e"),
    ]


def test_sort_containers_attached():
    c1 = {
        "a37779e06f3b694eba491dd450aad18bbbaa0a0fce2952e7c9195ea45ae79d41": {
            "Name": "buildx_buildkit_kind-builder0",
            "EndpointID": "8f6411fb4360059b2f91028f91ef03130abc96d6381afc265ce53c9df89d5a3d",
        }
    }
    c2 = {
        "aad18bbbaa0a0fce2952e7c9195ea45ae79d41a37779e06f3b694eba491dd450": {
            "Name": "fakey-fake",
            "EndpointID": "f03130abc96d6381afc265ce53c9df89d5a3d8f6411fb4360059b2f91028f91e",
        }
    }
    networks = [
        NetworkInspectEntry("1ed9912325a0d08594ee786de91ebd961e631643877b5ee58ec906b640813eae"),
        NetworkInspectEntry("dc7f897c237215c3b73d2c9ba1d4e116d872793a6c1c0e5bf083762998de8b4e", c1),
        NetworkInspectEntry("f0445f08b9989921da00250d778975202267fbab364e5fbad0ceb6db24f3f91e"),
        NetworkInspectEntry("128154205c7d88c7bb9c255d389bc9e222b58a48cf83619976e7665a48e79918", c2),
    ]
    sort_network_inspect_entries(networks)
    assert networks == [
        NetworkInspectEntry("128154205c7d88c7bb9c255d389bc9e222b58a48cf83619976e7665a48e79918", c2),
        NetworkInspectEntry("dc7f897c237215c3b73d2c9ba1d4e116d872793a6c1c0e5bf083762998de8b4e", c1),
        NetworkInspectEntry("1ed9912325a0d08594ee786de91ebd961e631643877b5ee58ec906b640813eae"),
        NetworkInspectEntry("f0445f08b9989921da00250d778975202267fbab364e5fbad0ceb6db24f3f91e"),
    ]


def test_parse_network_inspect():
    data = json.dumps([{"Id": "abc", "Containers": {"x": {"Name": "n"}}}, {"Id": "def", "Containers": None}])
    entries = parse_network_inspect(data)
    assert entries == [NetworkInspectEntry("abc", {"x": {"Name": "n"}}), NetworkInspectEntry("def")]


def test_parse_network_inspect_rejects_garbage():
    with pytest.raises(ValueError):
        parse_network_inspect(b"")
    with pytest.raises(ValueError):
        parse_network_inspect(b'{"Id": "abc"}')


def err(text):
    return RunError(["docker"], text.encode(), 1)


def test_error_classifiers():
    assert is_ipv6_unavailable_error(err("Error response from daemon: Cannot read IPv6 setup for bridge x"))
    assert not is_ipv6_unavailable_error(err("something else"))
    assert is_pool_overlap_error(err("Error response from daemon: Pool overlaps with other one on this address space"))
    assert is_pool_overlap_error(err("failed: networks have overlapping IPv4"))
    assert not is_pool_overlap_error(err("unrelated"))
    assert is_network_already_exists_error(err("Error response from daemon: network with name kind already exists"))
    assert not is_network_already_exists_error(err("Error response from daemon: network with name kind"))
    assert not is_pool_overlap_error(RuntimeError("plain"))
    assert not is_ipv6_unavailable_error(None)


def test_error_classifier_follows_cause():
    try:
        try:
            raise err("Error response from daemon: Pool overlaps with other one on this address space")
        except RunError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert is_pool_overlap_error(outer)


def test_is_only_error_no_such_network():
    assert is_only_error_no_such_network(err("Error: No such network: a\nError: No such network: b\n"))
    assert not is_only_error_no_such_network(err("Error: No such network: a\nError: boom\n"))
    assert is_only_error_no_such_network(err("[]\n"))
    # the trailing line without a newline is not examined
    assert is_only_error_no_such_network(err("Error: No such network: a\nError: boom"))
    assert not is_only_error_no_such_network(RuntimeError("x"))


def test_create_network_args(monkeypatch):
    fake = install(monkeypatch, lambda args: (0, b"", b""))
    result = create_network("kind", "", 0)
    assert result is None
    assert fake.calls == [[
        "network", "create", "-d=bridge",
        "-o", "com.docker.network.bridge.enable_ip_masquerade=true",
        "kind",
    ]]


def test_create_network_args_with_mtu_and_subnet(monkeypatch):
    fake = install(monkeypatch, lambda args: (0, b"", b""))
    result = create_network("kind", "fc00:f853:ccd:e793::/64", 1500)
    assert result is None
    call = fake.calls[0]
    assert "com.docker.network.driver.mtu=1500" in call
    assert call[-4:] == ["--ipv6", "--subnet", "fc00:f853:ccd:e793::/64", "kind"]


def test_create_network_failure_raises(monkeypatch):
    install(monkeypatch, lambda args: (1, b"", b"bad"))
    with pytest.raises(RunError):
        create_network("kind", "", 0)


@pytest.mark.parametrize("out,expected", [(b"1500\n", 1500), (b"", 0), (b"abc\n", 0), (b"1\n2\n", 0)])
def test_get_default_network_mtu(monkeypatch, out, expected):
    install(monkeypatch, lambda args: (0, out, b""))
    assert get_default_network_mtu() == expected


def test_get_default_network_mtu_failure(monkeypatch):
    install(monkeypatch, lambda args: (1, b"", b"boom"))
    assert get_default_network_mtu() == 0


def test_networks_with_name(monkeypatch):
    fake = install(monkeypatch, lambda args: (0, b"id1\nid2\n", b""))
    assert networks_with_name("my.net") == ["id1", "id2"]
    assert "--filter=name=^my\\.net$" in fake.calls[0]


def test_networks_with_name_empty(monkeypatch):
    install(monkeypatch, lambda args: (0, b"", b""))
    assert networks_with_name("kind") == []


def test_check_if_network_exists(monkeypatch):
    install(monkeypatch, lambda args: (0, b"kind\n", b""))
    assert check_if_network_exists("kind")
    install(monkeypatch, lambda args: (0, b"", b""))
    assert not check_if_network_exists("kind")


def test_remove_duplicate_networks(monkeypatch):
    inspect = json.dumps([
        {"Id": "bbb", "Containers": {}},
        {"Id": "aaa", "Containers": {"c": {"Name": "n"}}},
        {"Id": "ccc"},
    ]).encode()

    def handler(args):
        if args[:2] == ["network", "ls"]:
            return 0, b"bbb\naaa\nccc\n", b""
        if args[:2] == ["network", "inspect"]:
            return 0, inspect, b""
        return 0, b"", b""

    fake = install(monkeypatch, handler)
    assert remove_duplicate_networks("kind") is True
    assert fake.calls_starting("network", "rm") == [["network", "rm", "bbb", "ccc"]]


def test_remove_duplicate_networks_none(monkeypatch):
    fake = install(monkeypatch, lambda args: (0, b"", b""))
    assert remove_duplicate_networks("kind") is False
    assert fake.calls_starting("network", "rm") == []


def test_ensure_network_already_exists(monkeypatch):
    fake = install(monkeypatch, lambda args: (0, b"id1\n", b""))
    assert ensure_network("kind") is None
    assert fake.calls_starting("network", "create") == []
    assert networks_with_name("kind") == ["id1"]


def test_ensure_network_creates(monkeypatch):
    state = {"created": False}

    def handler(args):
        if args[:2] == ["network", "ls"]:
            return 0, (b"id1\n" if state["created"] else b""), b""
        if args[:3] == ["network", "inspect", "bridge"]:
            return 0, b"1500\n", b""
        if args[:2] == ["network", "create"]:
            state["created"] = True
            return 0, b"", b""
        return 0, b"", b""

    fake = install(monkeypatch, handler)
    assert ensure_network("kind") is None
    creates = fake.calls_starting("network", "create")
    assert len(creates) == 1
    assert "com.docker.network.driver.mtu=1500" in creates[0]
    assert creates[0][-3:] == ["--subnet", "fc00:f853:ccd:e793::/64", "kind"]
    assert networks_with_name("kind") == ["id1"]


def test_ensure_network_ipv6_unavailable(monkeypatch):
    def handler(args):
        if args[:2] == ["network", "create"] and "--ipv6" in args:
            return 1, b"", b"Error response from daemon: Cannot read IPv6 setup for bridge"
        return 0, b"", b""

    fake = install(monkeypatch, handler)
    assert ensure_network("kind") is None
    creates = fake.calls_starting("network", "create")
    assert len(creates) == 2
    assert "--ipv6" not in creates[1]


def test_ensure_network_exhausts_attempts(monkeypatch):
    def handler(args):
        if args[:2] == ["network", "create"]:
            return 1, b"", b"Error response from daemon: Pool overlaps with other one on this address space"
        return 0, b"", b""

    fake = install(monkeypatch, handler)
    with pytest.raises(RuntimeError, match="exhausted attempts"):
        ensure_network("kind")
    assert len(fake.calls_starting("network", "create")) == 5


def test_ensure_network_unknown_error(monkeypatch):
    def handler(args):
        if args[:2] == ["network", "create"]:
            return 1, b"", b"some other failure"
        return 0, b"", b""

    install(monkeypatch, handler)
    with pytest.raises(RunError):
        ensure_network("kind")