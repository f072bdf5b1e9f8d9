# nodeprov

Cluster "nodes" that are containers, managed by running the `docker` or
`podman` command-line tools. Each node is a long-lived container labelled
with the name of its cluster and its role. With this library you can list
clusters and nodes, run commands inside nodes, read their roles, addresses
and logs, delete nodes, pull node images, and set up the container network
the nodes share.

## Installation

```
pip install nodeprov
```

Any operation that talks to a container engine needs the `docker` or
`podman` binary on `PATH`. The pure helpers work without either binary.
They compute subnets, sanitise image names and parse engine output.

## Providers

```python
import logging

from nodeprov.docker_provider import DockerProvider
from nodeprov.podman_provider import PodmanProvider

provider = DockerProvider(logging.getLogger("nodeprov"))

for cluster in provider.list_clusters():
    for node in provider.list_nodes(cluster):
        print(cluster, node, node.role(), node.ip())

info = provider.info()          # ProviderInfo, cached after the first call
print(info.rootless, info.cgroup2, info.supports_memory_limit)
```

`list_clusters` returns the cluster names, sorted and without duplicates.
`list_nodes` returns `ContainerNode` handles for every container of a
cluster, including stopped ones. `delete_nodes` force-removes the containers
and their volumes.

`PodmanProvider` has the same methods. When it is created, it logs a warning
that the podman provider is experimental. After `delete_nodes` removes the
containers, it also removes the podman volumes labelled with each node's
name.

To check whether an engine is installed, use
`nodeprov.docker_util.is_available()` and `nodeprov.podman_util.is_available()`.
`nodeprov.podman_util.ensure_min_version()` raises `RuntimeError` if podman
is older than 1.8.0.

## Running commands in a node

```python
import io

node = provider.node("kind-control-plane")
buf = io.BytesIO()
node.command("cat", "/etc/os-release").set_stdout(buf).run()
print(buf.getvalue().decode())
```

Commands run through `<engine> exec --privileged`. To run a command on the
host instead, use `nodeprov.base.Cmd`. The helpers `output` and
`output_lines` return what a command wrote to stdout. A failed command
raises `nodeprov.base.RunError`. Its `output` attribute holds the command's
combined stdout and stderr, and `returncode` is `None` if the command never
finished.

## Networks

```python
from nodeprov.docker_network import ensure_network, generate_ula_subnet_from_name

generate_ula_subnet_from_name("kind", 0)   # 'fc00:f853:ccd:e793::/64'
ensure_network("kind")
```

`ensure_network` creates a bridge network whose IPv6 ULA subnet is derived
from the network name:

- If that subnet overlaps an existing pool, it tries other subnets, up to
  five attempts in all.
- If the host cannot set up IPv6, it creates an IPv4-only network.
- If docker has left several networks with the same name, it keeps one and
  removes the others.

`nodeprov.podman_network.ensure_network` does the same for podman. With
podman clients that do not know the `--ipv6` flag, it creates an IPv4-only
network.

## Images

```python
from nodeprov.podman_images import sanitize_image

sanitize_image("kindest/node:v1.21.1")
# ('kindest/node:v1.21.1', 'docker.io/kindest/node:v1.21.1')
```

`pull_if_not_present(image, retries)` is in both `nodeprov.docker_images`
and `nodeprov.podman_images`. It pulls an image only if the image is not
already present locally, and returns whether it pulled. When a pull fails,
it retries up to `retries` more times, waiting longer before each retry. If
every attempt fails, it raises `RuntimeError`.

## What it does not do

The package manages nodes that already exist. It does not provision a
cluster: it creates no node containers from a cluster configuration and
plans no load balancer or port mappings. It does not look up API server
endpoints, and it does not collect cluster logs into a directory. It has no
command-line tool. It is a library only.