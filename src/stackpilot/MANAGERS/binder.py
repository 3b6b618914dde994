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
Binding of a service's volumes and networks to concrete resources.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List

from ..MODELS.errors import BindError
from ..MODELS.orchestration_config import DEFAULT_NETWORK
from ..MODELS.service_definition import ServiceDefinition
from .descriptor_store import DescriptorStore
from .environment_manager import EnvironmentManager
from .network_manager import NetworkInterface, NetworkManager
from .volume_manager import ResolvedMount, VolumeManager


@dataclass
class Binding:
    """Everything an instance needs from the host besides its image."""
    mounts: List[ResolvedMount] = field(default_factory=list)
    interfaces: List[NetworkInterface] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)


class ResourceBinder:
    """
    Resolves named volumes and bridge networks at instantiation time.

    Binding is idempotent: the same volume or network name always resolves
    to the same backing directory or network, whichever service asks.
    """

    def __init__(self, store: DescriptorStore, state_dir: str = ".stackpilot"):
        self.store = store
        self.volume_manager = VolumeManager(store.base_dir, os.path.join(state_dir, "volumes"))
        self.network_manager = NetworkManager()
        self.env_manager = EnvironmentManager(store.base_dir)
        for descriptor in store:
            self.network_manager.register_ports(descriptor)

    def bind(self, descriptor: ServiceDefinition) -> Binding:
        """
        :raises BindError: If a volume or network the service uses was never declared.
        """
        mounts = []
        for mount in descriptor.volumes:
            if mount.is_named and mount.source not in self.store.volumes:
                raise BindError(f"service {descriptor.name}: volume {mount.source} is not declared")
            try:
                mounts.append(self.volume_manager.resolve(mount))
            except OSError as e:
                raise BindError(f"service {descriptor.name}: cannot prepare volume {mount.source}: {e}") from e

        interfaces = []
        for name in descriptor.networks or [DEFAULT_NETWORK]:
            declaration = self.store.networks.get(name)
            if declaration is None:
                raise BindError(f"service {descriptor.name}: network {name} is not declared")
            try:
                self.network_manager.create_network(declaration)
            except (ValueError, RuntimeError) as e:
                raise BindError(f"service {descriptor.name}: cannot create network {name}: {e}") from e
            interfaces.append(self.network_manager.connect_service(descriptor.name, name))

        try:
            environment = self.env_manager.get_merged_environment(
                descriptor.environment,
                descriptor.environment_files,
                defaults=self.network_manager.get_service_discovery_env(self._peers(descriptor)),
            )
        except OSError as e:
            raise BindError(f"service {descriptor.name}: cannot read env file: {e}") from e
        return Binding(mounts=mounts, interfaces=interfaces, environment=environment)

    def _peers(self, descriptor: ServiceDefinition) -> List[str]:
        """Declared services sharing a network with ``descriptor``."""
        networks = set(descriptor.networks or [DEFAULT_NETWORK])
        return [
            other.name for other in self.store
            if other.name != descriptor.name and networks & set(other.networks or [DEFAULT_NETWORK])
        ]
