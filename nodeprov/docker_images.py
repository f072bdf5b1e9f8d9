"""Pulling node images with docker."""

from __future__ import annotations

import logging
import time

from nodeprov.base import Cmd, RunError

__all__ = ["sanitize_image", "pull_if_not_present", "pull"]

_log = logging.getLogger(__name__)


def sanitize_image(image: str) -> tuple[str, str]:
    """Return a human readable image name and the pullable image reference."""
    if "@sha256:" in image:
        return image.split("@sha256:")[0], image
    return image, image


def pull_if_not_present(image: str, retries: int) -> bool:
    """Pull ``image`` unless present locally; return whether a pull happened."""
    try:
        Cmd("docker", "inspect", "--type=image", image).run()
    except RunError:
        pull(image, retries)
        return True
    _log.debug("Image: %s present locally", image)
    return False


def pull(image: str, retries: int) -> None:
    """Pull ``image``, retrying up to ``retries`` more times with growing pauses."""
    _log.debug("Pulling image: %s ...", image)
    try:
        Cmd("docker", "pull", image).run()
        return
    except RunError as exc:
        error = exc
    for i in range(retries):
        time.sleep(i + 1)
        _log.debug('Trying again to pull image: "%s" ... %s', image, error)
        try:
            Cmd("docker", "pull", image).run()
            return
        except RunError as exc:
            error = exc
    raise RuntimeError(f'failed to pull image "{image}"') from error