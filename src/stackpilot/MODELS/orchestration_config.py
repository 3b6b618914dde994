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
Models for overall orchestration configuration.
"""
from typing import Dict, Optional
from pydantic import BaseModel, Field
from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"


class VolumeDeclaration(BaseModel):
    """A top-level named volume."""
    name: str
    driver: str = "local"
    external: bool = False


class NetworkDeclaration(BaseModel):
    """A top-level network. Only bridge networks are supported."""
    name: str
    driver: str = "bridge"
    subnet: Optional[str] = None


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed compose file. Services keep declaration order.
    """
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDeclaration] = Field(
        default_factory=lambda: {DEFAULT_NETWORK: NetworkDeclaration(name=DEFAULT_NETWORK)}
    )
    volumes: Dict[str, VolumeDeclaration] = {}
    base_dir: str = "."
