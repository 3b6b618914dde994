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
Volume management for services: named volume backing stores and mount resolution.
"""
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..MODELS.service_definition import VolumeMount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamedVolume:
    """A named volume and the directory backing it."""
    name: str
    path: str
    created_at: str


@dataclass(frozen=True)
class ResolvedMount:
    """A mount with its source resolved to a concrete backing path."""
    source: str
    target: str
    read_only: bool = False
    volume: Optional[str] = None  # set for named volumes


class VolumeManager:
    """
    Manages named volumes as directories under ``volumes_root``.

    Volumes are created lazily on first use and outlive the instances that
    mount them.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".stackpilot/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for internal volume storage.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(self.base_dir, volumes_root))
        self._volumes: Dict[str, NamedVolume] = {}

    def create_volume(self, name: str) -> NamedVolume:
        """
        Returns the volume called ``name``, creating its backing directory if needed.
        Repeated calls return the same volume.
        """
        volume = self._volumes.get(name)
        if volume is not None:
            return volume
        path = os.path.join(self.volumes_root, name)
        if not os.path.isdir(path):
            os.makedirs(path, exist_ok=True)
            logger.info("Created volume %s at %s", name, path)
        volume = NamedVolume(
            name=name,
            path=path,
            created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        self._volumes[name] = volume
        return volume

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        return self._volumes.get(name)

    def list_volumes(self) -> List[NamedVolume]:
        return list(self._volumes.values())

    def remove_volume(self, name: str, force: bool = False) -> bool:
        """
        Removes a volume and its data. Non-empty volumes need ``force``.

        :return: True if the volume was removed.
        """
        volume = self._volumes.get(name)
        if volume is None:
            return False
        if os.listdir(volume.path) and not force:
            return False
        shutil.rmtree(volume.path, ignore_errors=True)
        del self._volumes[name]
        return True

    def resolve(self, mount: VolumeMount) -> ResolvedMount:
        """Resolves a mount to its backing path, creating named volumes on first use."""
        if mount.is_named:
            volume = self.create_volume(mount.source)
            return ResolvedMount(volume.path, mount.target, mount.read_only, volume=volume.name)
        return ResolvedMount(self.resolve_source(mount.source), mount.target, mount.read_only)

    def resolve_source(self, source: str) -> str:
        """
        Resolves a bind-mount source path relative to the project directory.

        :param source: The source path.
        :return: The absolute path to the source.
        """
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(source)))

    def resolve_target(self, target: str, root: str) -> str:
        """
        Maps a path inside the instance onto the instance's root directory.

        :param target: The absolute target path inside the instance.
        :param root: Host directory standing in for the instance's filesystem root.
        """
        # ".." never climbs above the instance root
        inside = os.path.normpath("/" + target.replace("\\", "/")).lstrip("/")
        return os.path.abspath(os.path.join(root, inside))

    def materialize(self, mounts: List[ResolvedMount], root: str) -> None:
        """
        Makes mounts visible under ``root`` by symlinking each target to its source.

        :param mounts: Resolved mounts of one instance.
        :param root: Host directory standing in for the instance's filesystem root.
        """
        for mount in mounts:
            target_path = self.resolve_target(mount.target, root)
            if not os.path.exists(mount.source):
                os.makedirs(mount.source, exist_ok=True)
            os.makedirs(os.path.dirname(target_path), exist_ok=True)

            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(mount.source):
                    continue
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                shutil.rmtree(target_path)
            elif os.path.exists(target_path):
                os.remove(target_path)

            logger.debug("Mapping volume: %s -> %s", mount.source, target_path)
            os.symlink(mount.source, target_path, target_is_directory=os.path.isdir(mount.source))
