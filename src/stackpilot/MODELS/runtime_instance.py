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
Runtime-side models: running replicas and the status reported for services.
"""
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from .service_definition import ServiceDefinition


class HealthStatus(str, Enum):
    """Health status of an instance or service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


class InstanceState(str, Enum):
    """Lifecycle of a single replica."""

    STARTING = "starting"
    RUNNING = "running"  # up, no health check
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_up(self) -> bool:
        return self not in (InstanceState.STOPPED, InstanceState.FAILED)


class ServiceState(str, Enum):
    """Lifecycle of a service as reported by status()."""

    PENDING = "pending"
    WAITING = "waiting"  # blocked on dependencies
    RUNNING = "running"
    RESTARTING = "restarting"  # every replica is between exit and relaunch
    NOT_STARTED = "not started"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ServiceState.NOT_STARTED, ServiceState.STOPPED, ServiceState.FAILED)


_instance_ids = itertools.count(1)


@dataclass
class HealthResult:
    """Outcome of a single probe."""

    success: bool
    output: str = ""
    checked_at: Optional[str] = None


@dataclass(eq=False)
class RuntimeInstance:
    """
    One running replica of a descriptor.

    The descriptor is shared with the store, never copied. ``handle`` is
    whatever the container runtime needs to address the instance.
    """

    descriptor: ServiceDefinition
    replica: int = 1
    instance_id: str = ""
    state: InstanceState = InstanceState.STARTING
    health: HealthStatus = HealthStatus.NONE
    last_result: Optional[HealthResult] = None
    restart_count: int = 0
    exit_code: Optional[int] = None
    operator_stopped: bool = False
    launched_at: Optional[float] = None
    handle: Any = None

    def __post_init__(self):
        if not self.instance_id:
            self.instance_id = f"{self.descriptor.name}-{self.replica}-{next(_instance_ids)}"
        if self.descriptor.health_check is not None:
            self.health = HealthStatus.STARTING

    @property
    def service(self) -> str:
        return self.descriptor.name

    def replacement(self) -> "RuntimeInstance":
        """A fresh instance for the same replica slot, carrying the restart count."""
        return RuntimeInstance(
            descriptor=self.descriptor,
            replica=self.replica,
            restart_count=self.restart_count + 1,
        )


@dataclass
class InstanceSnapshot:
    instance_id: str
    replica: int
    state: InstanceState
    health: HealthStatus
    restart_count: int
    exit_code: Optional[int] = None


@dataclass
class ServiceStatus:
    """Point-in-time view of a service, as returned by Orchestrator.status()."""

    name: str
    state: ServiceState = ServiceState.PENDING
    health: HealthStatus = HealthStatus.NONE
    restart_count: int = 0
    error: Optional[str] = None
    instances: List[InstanceSnapshot] = field(default_factory=list)
