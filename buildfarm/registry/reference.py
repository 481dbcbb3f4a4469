"""Container image references."""

from dataclasses import dataclass
from typing import Optional

DOCKER_HUB = "docker.io"
DOCKER_HUB_API = "registry-1.docker.io"


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference: registry/repository:tag[@digest]."""

    registry: str
    repository: str
    tag: str = "latest"
    digest: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse a reference such as "gcr.io/proj/jenkins:lts".

        Raises:
            ValueError: If the reference is empty or malformed
        """
        if not reference or reference.strip() != reference:
            raise ValueError(f"Invalid image reference: '{reference}'")

        remainder, _, digest = reference.partition("@")
        first, sep, rest = remainder.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, path = first, rest
        else:
            registry, path = DOCKER_HUB, remainder

        # A colon after the last slash separates the tag
        name, colon, tag = path.rpartition(":")
        if not colon or "/" in tag:
            name, tag = path, "latest"
        if not name:
            raise ValueError(f"Invalid image reference: '{reference}'")

        if registry == DOCKER_HUB and "/" not in name:
            name = f"library/{name}"

        return cls(registry=registry, repository=name, tag=tag, digest=digest or None)

    @property
    def api_host(self) -> str:
        """Host serving the registry HTTP API."""
        return DOCKER_HUB_API if self.registry == DOCKER_HUB else self.registry

    @property
    def name(self) -> str:
        """Reference without tag or digest, as used for docker push."""
        return f"{self.registry}/{self.repository}"

    def pinned(self, digest: str) -> str:
        """Immutable reference to a specific digest."""
        return f"{self.name}@{digest}"

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"
