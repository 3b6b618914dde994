import pytest

from stackpilot.REGISTRY.image_reference import ImageReference


@pytest.mark.parametrize("reference, registry, repository, tag", [
    ("nginx", "docker.io", "library/nginx", "latest"),
    ("nginx:alpine", "docker.io", "library/nginx", "alpine"),
    ("nrad8393/attendance-system-backend-server:latest", "docker.io",
     "nrad8393/attendance-system-backend-server", "latest"),
    ("localhost:5000/team/app:1.0", "localhost:5000", "team/app", "1.0"),
    ("ghcr.io/org/app", "ghcr.io", "org/app", "latest"),
])
def test_parse(reference, registry, repository, tag):
    ref = ImageReference.parse(reference)
    assert (ref.registry, ref.repository, ref.tag) == (registry, repository, tag)


def test_digest_reference():
    digest = "sha256:" + "a" * 64
    ref = ImageReference.parse(f"redis@{digest}")
    assert ref.digest == digest
    assert ref.tag is None
    assert ref.full_name == f"docker.io/library/redis@{digest}"


def test_names():
    ref = ImageReference.parse("postgres:13")
    assert ref.full_name == "docker.io/library/postgres:13"
    assert ref.short_name == "postgres:13"
    assert str(ImageReference.parse("quay.io/org/app:2")) == "quay.io/org/app:2"


@pytest.mark.parametrize("reference", ["", " nginx", "Nginx", "nginx:", "nginx:bad tag", "app@sha256:xyz", "a//b"])
def test_malformed(reference):
    with pytest.raises(ValueError):
        ImageReference.parse(reference)
