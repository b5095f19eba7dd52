"""Tests for image reference parsing."""

from __future__ import annotations

import pytest

from windbag.docker.image import ImageReference, image_id


class TestImageReference:
    @pytest.mark.parametrize(
        ("image", "registry", "repository", "tag"),
        [
            ("docker.io/library/ubuntu:21.04", "docker.io", "library/ubuntu", "21.04"),
            ("ubuntu", "docker.io", "library/ubuntu", "latest"),
            ("registry.example.com/acs/tool:v1", "registry.example.com", "acs/tool", "v1"),
            ("thxcode/flannel:v0.14.0", "docker.io", "thxcode/flannel", "v0.14.0"),
            ("localhost:5000/tool:v1", "localhost:5000", "tool", "v1"),
            ("localhost:5000/tool", "localhost:5000", "tool", "latest"),
        ],
    )
    def test_parse(self, image: str, registry: str, repository: str, tag: str) -> None:
        assert ImageReference.parse(image) == ImageReference(registry=registry, repository=repository, tag=tag)

    def test_str(self) -> None:
        assert str(ImageReference.parse("ubuntu")) == "docker.io/library/ubuntu:latest"


class TestImageId:
    def test_drops_first_segment(self) -> None:
        assert image_id("thxcode/flannel:v0.14.0") == "flannel"
        assert image_id("registry.example.com/acs/tool:v1") == "tool"

    def test_official_image(self) -> None:
        assert image_id("ubuntu:21.04") == "ubuntu"
