"""Image reference parsing."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"


def _looks_like_registry(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


@dataclass(frozen=True, slots=True)
class ImageReference:
    """``registry/repository:tag`` split into its parts."""

    registry: str
    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        """Parse an image string, filling in Docker Hub defaults.

        ``docker.io/library/ubuntu:21.04`` -> (docker.io, library/ubuntu, 21.04)
        ``ubuntu`` -> (docker.io, library/ubuntu, latest)
        ``registry.example.com/acs/tool:v1`` -> (registry.example.com, acs/tool, v1)
        """
        name, tag = image, DEFAULT_TAG
        colon = image.rfind(":")
        if colon > 0 and "/" not in image[colon + 1 :]:
            name, tag = image[:colon], image[colon + 1 :]

        parts = name.split("/", 2)
        if len(parts) == 3 or (len(parts) == 2 and _looks_like_registry(parts[0])):
            registry, repository = parts[0], "/".join(parts[1:])
        else:
            registry, repository = DEFAULT_REGISTRY, name
        if "/" not in repository and registry == DEFAULT_REGISTRY:
            repository = f"library/{repository}"
        return cls(registry=registry, repository=repository, tag=tag)

    @property
    def image_id(self) -> str:
        """Repository without its first path segment (``acs/tool`` -> ``tool``)."""
        return self.repository.split("/", 1)[-1]


def image_id(image: str) -> str:
    """Derive the short build id used in remote file names from an image string."""
    return ImageReference.parse(image).image_id
