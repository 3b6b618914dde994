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
The descriptor store: the single owner of validated service definitions.
"""
import logging
import os
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ..MODELS.errors import NotFoundError, ValidationError
from ..MODELS.orchestration_config import (
    DEFAULT_NETWORK,
    NetworkDeclaration,
    OrchestrationConfig,
    VolumeDeclaration,
)
from ..MODELS.service_definition import DependencyCondition, ServiceDefinition
from ..PARSERS.compose_parser import ComposeParser
from ..REGISTRY.image_reference import ImageReference

logger = logging.getLogger(__name__)

Definition = Union[OrchestrationConfig, Mapping, Sequence[ServiceDefinition]]


class DescriptorStore:
    """
    Holds the declarative definition of every service, plus the top-level
    volume and network declarations they refer to.

    Loading is all-or-nothing: on any problem nothing is stored and a
    single ValidationError lists every offending descriptor.
    """

    def __init__(self, parser: Optional[ComposeParser] = None):
        self.parser = parser or ComposeParser()
        self._descriptors: Dict[str, ServiceDefinition] = {}
        self.networks: Dict[str, NetworkDeclaration] = {}
        self.volumes: Dict[str, VolumeDeclaration] = {}
        self.base_dir = "."

    def load_file(self, compose_path: str) -> List[ServiceDefinition]:
        """Parses and loads a compose file."""
        with open(compose_path, 'r') as f:
            content = f.read()
        data = self.parser.load_document(content)
        return self.load(data, base_dir=os.path.dirname(os.path.abspath(compose_path)))

    def load(self, definition: Definition,
             networks: Optional[Mapping[str, NetworkDeclaration]] = None,
             volumes: Optional[Mapping[str, VolumeDeclaration]] = None,
             base_dir: Optional[str] = None) -> List[ServiceDefinition]:
        """
        Validates and stores a topology.

        :param definition: A parsed OrchestrationConfig, a decoded compose
            document, or a sequence of ServiceDefinitions.
        :param networks: Network declarations, for sequence input.
        :param volumes: Volume declarations, for sequence input.
        :param base_dir: Directory relative paths resolve against.
        :return: The stored descriptors, in declaration order.
        :raises ValidationError: Listing every problem in every descriptor.
        """
        problems: List[Tuple[Optional[str], str]] = []

        if isinstance(definition, OrchestrationConfig):
            config = definition
        elif isinstance(definition, Mapping):
            self.parser.problems = []
            config = self.parser.build_config(definition, base_dir=base_dir or ".")
            problems.extend(self.parser.problems)
        else:
            services: Dict[str, ServiceDefinition] = {}
            for service in definition:
                if service.name in services:
                    problems.append((service.name, "declared more than once"))
                    continue
                services[service.name] = service
            config = OrchestrationConfig(
                services=services,
                networks=dict(networks) if networks is not None else
                {DEFAULT_NETWORK: NetworkDeclaration(name=DEFAULT_NETWORK)},
                volumes=dict(volumes or {}),
            )
        if base_dir is not None:
            config.base_dir = base_dir

        declared_networks = dict(config.networks)
        declared_networks.setdefault(DEFAULT_NETWORK, NetworkDeclaration(name=DEFAULT_NETWORK))

        problems.extend(self._check_references(config, declared_networks))
        if problems:
            raise ValidationError(problems)

        self._descriptors = dict(config.services)
        self.networks = declared_networks
        self.volumes = dict(config.volumes)
        self.base_dir = config.base_dir
        logger.info("Loaded %d services: %s", len(self._descriptors), ", ".join(self._descriptors))
        return list(self._descriptors.values())

    def _check_references(self, config: OrchestrationConfig,
                          networks: Mapping[str, NetworkDeclaration]) -> List[Tuple[str, str]]:
        problems = []
        published: Dict[Tuple[int, str], str] = {}

        for name, service in config.services.items():
            if service.image:
                try:
                    ImageReference.parse(service.image)
                except ValueError as e:
                    problems.append((name, str(e)))

            for network in service.networks:
                if network not in networks:
                    problems.append((name, f"refers to undefined network {network}"))

            for mount in service.volumes:
                if mount.is_named and mount.source not in config.volumes:
                    problems.append((name, f"refers to undefined volume {mount.source}"))

            for env_file in service.environment_files:
                if not os.path.isfile(os.path.join(config.base_dir, env_file)):
                    problems.append((name, f"env file {env_file} not found"))

            for dep in service.depends_on:
                if dep.service == name:
                    continue  # reported as a cycle by the graph builder
                target = config.services.get(dep.service)
                if dep.condition == DependencyCondition.HEALTHY and target is not None \
                        and target.health_check is None:
                    problems.append((name, f"depends on {dep.service} being healthy, "
                                           f"but {dep.service} has no health check"))
                elif dep.condition == DependencyCondition.HEALTHY and target is not None \
                        and target.replicas == 0:
                    problems.append((name, f"depends on {dep.service} being healthy, "
                                           f"but {dep.service} runs no replicas"))

            for port in service.ports:
                if port.host is None:
                    continue
                if service.replicas > 1:
                    problems.append((name, f"publishes fixed host port {port.host} "
                                           f"with {service.replicas} replicas"))
                key = (port.host, port.protocol)
                if key in published and published[key] != name:
                    problems.append((name, f"host port {port.host}/{port.protocol} "
                                           f"already published by {published[key]}"))
                published.setdefault(key, name)
        return problems

    def get(self, name: str) -> ServiceDefinition:
        """
        :raises NotFoundError: If no service with that name was loaded.
        """
        try:
            return self._descriptors[name]
        except KeyError:
            raise NotFoundError(f"no such service: {name}", [name]) from None

    def names(self) -> List[str]:
        """Service names in declaration order."""
        return list(self._descriptors)

    def descriptors(self) -> List[ServiceDefinition]:
        return list(self._descriptors.values())

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[ServiceDefinition]:
        return iter(list(self._descriptors.values()))

    def __len__(self) -> int:
        return len(self._descriptors)
