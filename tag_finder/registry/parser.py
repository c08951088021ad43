"""Parse image references into registry components."""

from __future__ import annotations

from dataclasses import dataclass

from tag_finder.registry.errors import InvalidReference

DOCKER_HUB_URL = "https://registry-1.docker.io"

# Registries whose API lives on the same host as the reference.
_KNOWN_REGISTRIES: dict[str, str] = {
    "docker.io": DOCKER_HUB_URL,
    "ghcr.io": "https://ghcr.io",
    "quay.io": "https://quay.io",
}

_TRANSPORT_PREFIX = "docker://"
_DIGEST_PREFIX = "sha256:"


@dataclass(frozen=True)
class ImageReference:
    """Resolved reference to a repository on a registry.

    Attributes:
        registry_url: Base URL of the registry API (e.g. ``https://ghcr.io``).
        repository: Full repository path (e.g. ``library/nginx``).
    """

    registry_url: str
    repository: str

    @property
    def registry(self) -> str:
        """Return the registry host (with port, if any)."""
        return self.registry_url.split("://", 1)[-1]


def resolve_image(image: str) -> ImageReference:
    """Resolve a user-supplied image string into an :class:`ImageReference`.

    Supported formats:

    * ``nginx``  (bare image name, assumes Docker Hub official images)
    * ``docker.io/nginx`` / ``docker.io/myorg/myrepo``
    * ``ghcr.io/owner/repo`` / ``quay.io/org/repo``
    * ``registry.example.com:5000/project/image``  (generic registry)

    A leading ``docker://`` transport prefix is ignored.

    Args:
        image: The image reference string.

    Returns:
        The resolved :class:`ImageReference`.

    Raises:
        InvalidReference: If the reference is empty or has an empty
            registry or repository segment.
    """
    ref = image.strip()
    if ref.startswith(_TRANSPORT_PREFIX):
        ref = ref[len(_TRANSPORT_PREFIX):]
    if not ref.strip("/"):
        raise InvalidReference(f"Empty image reference: {image!r}")

    if "/" not in ref:
        return ImageReference(DOCKER_HUB_URL, "library/" + ref)

    registry, repo = ref.split("/", 1)
    repo = repo.strip("/")
    if not registry:
        raise InvalidReference(f"Missing registry in image reference: {image!r}")
    if not repo:
        raise InvalidReference(f"Missing repository in image reference: {image!r}")

    if registry == "docker.io" and "/" not in repo:
        repo = "library/" + repo

    base_url = _KNOWN_REGISTRIES.get(registry, f"https://{registry}")
    return ImageReference(base_url, repo)


def normalize_digest(digest: str) -> str:
    """Return *digest* with a ``sha256:`` prefix."""
    value = digest.strip()
    if not value:
        raise ValueError("Empty digest")
    if not value.startswith(_DIGEST_PREFIX):
        value = _DIGEST_PREFIX + value
    return value
