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
Models for defining services, including restart policies, health checks, and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NEVER = "never"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.

    ``max_retries`` of None means retry forever. ``delay`` is the first
    backoff interval for on-failure restarts; None defers to the
    orchestrator settings.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NEVER
    max_retries: Optional[int] = Field(default=None, ge=0)
    delay: Optional[float] = Field(default=None, gt=0)
    max_delay: Optional[float] = Field(default=None, gt=0)

    @field_validator("condition", mode="before")
    @classmethod
    def _accept_compose_no(cls, value):
        # compose spells "never" as "no"; YAML may already have turned it into False
        if value is False or value == "no":
            return RestartPolicyCondition.NEVER
        return value


class ProbeKind(str, Enum):
    """How a health check probes an instance."""
    CMD = "cmd"
    CMD_SHELL = "cmd-shell"
    TCP = "tcp"
    HTTP = "http"


class HealthCheck(BaseModel):
    """
    Defines how to check the health of a service.

    ``test`` holds the argv for CMD, a single shell string for CMD-SHELL,
    a single ``host:port`` for TCP, or a single URL for HTTP.
    """
    kind: ProbeKind = ProbeKind.CMD
    test: List[str]
    interval: float = Field(default=30.0, gt=0)
    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1)
    start_period: float = Field(default=0.0, ge=0)


class VolumeMount(BaseModel):
    """
    Defines a mapping between a volume (or host path) and a service path.
    """
    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """True when the source names a declared volume rather than a path."""
        return not (
            self.source.startswith((".", "/", "~"))
            or "/" in self.source
            or "\\" in self.source
        )


class PortBinding(BaseModel):
    """A published port. ``host`` of None lets the runtime pick one."""
    container: int = Field(ge=1, le=65535)
    host: Optional[int] = Field(default=None, ge=1, le=65535)
    protocol: str = "tcp"
    host_ip: Optional[str] = None

    @field_validator("protocol")
    @classmethod
    def _known_protocol(cls, value: str) -> str:
        if value not in ("tcp", "udp", "sctp"):
            raise ValueError(f"unknown protocol {value!r}")
        return value


class DependencyCondition(str, Enum):
    """Readiness a dependency must reach before its dependents launch."""
    STARTED = "started"
    HEALTHY = "healthy"


class Dependency(BaseModel):
    """A depends_on edge."""
    service: str
    condition: DependencyCondition = DependencyCondition.STARTED


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from a compose file.
    """
    name: str = Field(min_length=1)
    image: str = ""

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []

    # Networking
    ports: List[PortBinding] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: List[Dependency] = []
    replicas: int = Field(default=1, ge=0)

    # Metadata
    labels: Dict[str, str] = {}

    def dependency_names(self) -> List[str]:
        return [dep.service for dep in self.depends_on]

    def full_command(self) -> List[str]:
        """
        Combines entrypoint and command: the entrypoint is the executable
        when present, and the command becomes its arguments.
        """
        if self.entrypoint:
            return self.entrypoint + self.command
        return list(self.command)
