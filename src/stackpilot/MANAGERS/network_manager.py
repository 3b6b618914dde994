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
Network management for services: bridge networks, address allocation and
service discovery.
"""
import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ..MODELS.orchestration_config import NetworkDeclaration
from ..MODELS.service_definition import ServiceDefinition

logger = logging.getLogger(__name__)

ADDRESS_POOL = ipaddress.ip_network("172.28.0.0/14")


class NetworkMode(str, Enum):
    """Supported network drivers."""
    BRIDGE = "bridge"


@dataclass(eq=False)
class Network:
    """A bridge network and the services attached to it."""
    name: str
    subnet: ipaddress.IPv4Network
    driver: NetworkMode = NetworkMode.BRIDGE
    services: Set[str] = field(default_factory=set)

    @property
    def gateway(self) -> ipaddress.IPv4Address:
        return next(self.subnet.hosts())


@dataclass(frozen=True)
class NetworkInterface:
    """A service's attachment to one network."""
    network: str
    address: str
    hostname: str


class NetworkManager:
    """
    Manages bridge networks, per-service addresses and service discovery.
    """
    def __init__(self, pool: ipaddress.IPv4Network = ADDRESS_POOL, prefix: int = 24):
        """
        :param pool: Range subnets are carved from when a network declares none.
        :param prefix: Prefix length of carved subnets.
        """
        self.networks: Dict[str, Network] = {}
        self._free_subnets: Iterator[ipaddress.IPv4Network] = pool.subnets(new_prefix=prefix)
        self._interfaces: Dict[Tuple[str, str], NetworkInterface] = {}
        self._next_host: Dict[str, Iterator[ipaddress.IPv4Address]] = {}
        self.service_ports: Dict[str, List[Tuple[int, Optional[int]]]] = {}

    def create_network(self, declaration: NetworkDeclaration) -> Network:
        """
        Returns the network for ``declaration``, creating it on first use.
        """
        network = self.networks.get(declaration.name)
        if network is not None:
            return network
        if declaration.subnet:
            subnet = ipaddress.ip_network(declaration.subnet)
        else:
            subnet = self._allocate_subnet()
        network = Network(name=declaration.name, subnet=subnet, driver=NetworkMode(declaration.driver))
        hosts = network.subnet.hosts()
        next(hosts)  # gateway
        self._next_host[network.name] = hosts
        self.networks[network.name] = network
        logger.info("Created %s network %s (%s)", network.driver.value, network.name, network.subnet)
        return network

    def _allocate_subnet(self) -> ipaddress.IPv4Network:
        taken = [n.subnet for n in self.networks.values()]
        for candidate in self._free_subnets:
            if not any(candidate.overlaps(other) for other in taken):
                return candidate
        raise RuntimeError("address pool exhausted")

    def connect_service(self, service: str, network_name: str) -> NetworkInterface:
        """
        Attaches a service to a created network. Reconnecting returns the same interface.
        """
        key = (network_name, service)
        interface = self._interfaces.get(key)
        if interface is not None:
            return interface
        network = self.networks[network_name]
        address = next(self._next_host[network_name])
        interface = NetworkInterface(network=network_name, address=str(address), hostname=service)
        network.services.add(service)
        self._interfaces[key] = interface
        return interface

    def register_ports(self, service_def: ServiceDefinition) -> None:
        """Records published ports for service discovery."""
        self.service_ports[service_def.name] = [(p.container, p.host) for p in service_def.ports]

    def get_service_discovery_env(self, services: List[str]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1, DB_PORT=5432
        """
        env = {}
        for name in services:
            prefix = name.upper().replace('-', '_')
            env[f"{prefix}_HOST"] = "127.0.0.1"
            ports = self.service_ports.get(name)
            if ports:
                container_port, host_port = ports[0]
                env[f"{prefix}_PORT"] = str(host_port or container_port)
        return env

    def resolve_hostname(self, hostname: str, network_name: Optional[str] = None) -> Optional[str]:
        """Address of a service, on a given network or the first one it is attached to."""
        for (network, service), interface in self._interfaces.items():
            if service == hostname and (network_name is None or network == network_name):
                return interface.address
        return None
