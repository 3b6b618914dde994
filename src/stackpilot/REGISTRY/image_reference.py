# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Image reference parsing.

Images are only ever referenced by name; resolving them to runnable
artifacts is the registry's job. Parsing here exists so malformed
references are caught when the topology is loaded.
"""

import re
from typing import Optional
from dataclasses import dataclass

_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[A-Fa-f0-9]{32,}$")
_REGISTRY = re.compile(r"^[A-Za-z0-9.-]+(?::\d+)?$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - nginx -> docker.io/library/nginx:latest
        - nginx:alpine -> docker.io/library/nginx:alpine
        - nrad8393/attendance-system-backend-server:latest
        - localhost:5000/image@sha256:<hex>
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        :raises ValueError: If the reference is empty or malformed.
        """
        if not reference or reference != reference.strip():
            raise ValueError(f"invalid image reference {reference!r}")

        remainder = reference
        digest = None
        if "@" in remainder:
            remainder, digest = remainder.rsplit("@", 1)
            if not _DIGEST.match(digest):
                raise ValueError(f"invalid digest in image reference {reference!r}")

        # A colon after the last slash separates the tag; before it, a registry port
        tag = None
        last_slash = remainder.rfind("/")
        last_colon = remainder.rfind(":")
        if last_colon > last_slash:
            remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]
            if not _TAG.match(tag):
                raise ValueError(f"invalid tag in image reference {reference!r}")

        parts = remainder.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            path = parts[1:]
            if not _REGISTRY.match(registry):
                raise ValueError(f"invalid registry in image reference {reference!r}")
        else:
            registry = cls.DEFAULT_REGISTRY
            path = parts
            if len(path) == 1:
                path = ["library"] + path

        for component in path:
            if not _COMPONENT.match(component):
                raise ValueError(f"invalid repository name in image reference {reference!r}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG
        return cls(registry=registry, repository="/".join(path), tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag}"

    @property
    def short_name(self) -> str:
        """Image name without the default registry or ``library/`` prefix."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.digest:
            return f"{repo}@{self.digest}"
        return f"{repo}:{self.tag}"

    def __str__(self) -> str:
        return self.short_name
