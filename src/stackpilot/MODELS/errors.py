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
Errors raised while loading and supervising a topology.

Load-time errors (validation, missing references, cycles) abort the whole
topology. Runtime errors (startup timeouts, bind failures) are scoped to the
service that raised them.
"""
from typing import Iterable, List, Optional, Tuple


class StackpilotError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(StackpilotError):
    """
    One or more descriptors are malformed or incomplete.

    Carries every problem found, not just the first one.
    """

    def __init__(self, problems: Iterable[Tuple[Optional[str], str]]):
        self.problems: List[Tuple[Optional[str], str]] = list(problems)
        super().__init__(self._format())

    def _format(self) -> str:
        lines = []
        for service, message in self.problems:
            if service:
                lines.append(f"service '{service}': {message}")
            else:
                lines.append(message)
        return "invalid topology:\n  " + "\n  ".join(lines)

    @property
    def services(self) -> List[str]:
        """Names of the offending services, in report order."""
        seen = []
        for service, _ in self.problems:
            if service and service not in seen:
                seen.append(service)
        return seen


class NotFoundError(StackpilotError):
    """A service, volume or network was referenced but never declared."""

    def __init__(self, message: str, names: Iterable[str] = ()):
        self.names = list(names)
        super().__init__(message)


class CycleError(StackpilotError):
    """The depends_on relation is not acyclic."""

    def __init__(self, members: Iterable[str]):
        self.members = list(members)
        super().__init__(
            "circular dependency between services: " + ", ".join(self.members)
        )


class StartupTimeoutError(StackpilotError):
    """A dependency did not reach its required condition before the deadline."""

    def __init__(self, service: str, dependency: str, condition: str, timeout: float):
        self.service = service
        self.dependency = dependency
        self.condition = condition
        self.timeout = timeout
        super().__init__(
            f"service {service}: dependency {dependency} not {condition} "
            f"after {timeout:g}s"
        )


class BindError(StackpilotError):
    """A volume or network referenced by a service cannot be resolved."""


class LaunchError(StackpilotError):
    """The container runtime could not launch an instance."""


class DependencyFailedError(StackpilotError):
    """A dependency stopped, failed or was never started before meeting its condition."""

    def __init__(self, service: str, dependency: str, state: str):
        self.service = service
        self.dependency = dependency
        self.state = state
        super().__init__(f"service {service}: dependency {dependency} is {state}")
