"""Container-backed cluster nodes managed through the docker and podman tools."""

__version__ = "0.1.0"
__all__ = [
    "base",
    "docker_images",
    "docker_network",
    "docker_provider",
    "docker_util",
    "podman_images",
    "podman_network",
    "podman_provider",
    "podman_util",
]