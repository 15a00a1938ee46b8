"""
Image reference helpers.

Inspected containers report Config.Image exactly as it was given at
create time, which may carry a digest pin or omit the tag entirely.
"""

from typing import Iterable, Tuple

DEFAULT_TAG = 'latest'


def split_image_reference(image: str) -> Tuple[str, str]:
    """
    Split an image reference into (repository, tag).

    Digest pins (@sha256:...) are dropped and a missing tag defaults to
    "latest". A colon inside the registry host (registry:5000/app) is not
    mistaken for a tag separator.

    Examples:
        >>> split_image_reference("nginx")
        ('nginx', 'latest')
        >>> split_image_reference("registry.lan:5000/app:2.1@sha256:abc")
        ('registry.lan:5000/app', '2.1')
    """
    if not image:
        raise ValueError("image reference cannot be empty")

    reference = image.split('@', 1)[0]

    last_slash = reference.rfind('/')
    last_colon = reference.rfind(':')
    if last_colon > last_slash:
        repository, tag = reference[:last_colon], reference[last_colon + 1:]
    else:
        repository, tag = reference, ''

    return repository, tag or DEFAULT_TAG


def normalize_image_reference(image: str) -> str:
    """Return "repository:tag" with digest removed and tag defaulted."""
    repository, tag = split_image_reference(image)
    return f"{repository}:{tag}"


def image_matches_any(image: str, markers: Iterable[str]) -> bool:
    """Case-insensitive substring match of an image name against markers."""
    lowered = (image or '').lower()
    return any(marker.lower() in lowered for marker in markers if marker)
