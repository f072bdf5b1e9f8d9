"""Pulling node images with podman."""

from __future__ import annotations

import logging
import time

from nodeprov.base import Cmd, RunError

__all__ = ["sanitize_image", "pull_if_not_present", "pull"]

_log = logging.getLogger(__name__)

_DEFAULT_DOMAIN = "docker.io/"
_OFFICIAL_REPO_NAME = "library"


def sanitize_image(image: str) -> tuple[str, str]:
    """Return a human readable image name and the fully qualified pull reference.

    Podman does not assume a default registry, so short names are expanded
    to ``docker.io`` (and ``docker.io/library`` for official images). When a
    digest is given the tag is dropped from the pull reference.
    """
    if "@sha256:" in image:
        splits = image.split("@sha256:")
        friendly = splits[0]
        remainder = splits[0].split(":")[0] + "@sha256:" + splits[1]
    else:
        friendly = image
        remainder = image

    if "/" not in remainder:
        remainder = f"{_OFFICIAL_REPO_NAME}/{remainder}"

    slash = friendly.find("/")
    if slash == -1:
        return friendly, _DEFAULT_DOMAIN + remainder
    first = friendly[:slash]
    looks_like_registry = any(ch in first for ch in ".:") or first == "localhost"
    if not looks_like_registry:
        return friendly, _DEFAULT_DOMAIN + remainder
    return friendly, remainder


def pull_if_not_present(image: str, retries: int) -> bool:
    """Pull ``image`` unless present locally; return whether a pull happened."""
    try:
        Cmd("podman", "inspect", "--type=image", image).run()
    except RunError:
        pull(image, retries)
        return True
    _log.debug("Image: %s present locally", image)
    return False


def pull(image: str, retries: int) -> None:
    """Pull ``image``, retrying up to ``retries`` more times with growing pauses."""
    _log.debug("Pulling image: %s ...", image)
    try:
        Cmd("podman", "pull", image).run()
        return
    except RunError as exc:
        error = exc
    for i in range(retries):
        time.sleep(i + 1)
        _log.debug('Trying again to pull image: "%s" ... %s', image, error)
        try:
            Cmd("podman", "pull", image).run()
            return
        except RunError as exc:
            error = exc
    raise RuntimeError(f'failed to pull image "{image}"') from error