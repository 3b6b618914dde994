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
Dependency resolution for services to determine startup and shutdown order.
"""
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from ..MODELS.errors import CycleError, NotFoundError
from ..MODELS.service_definition import Dependency, ServiceDefinition


class DependencyGraph:
    """
    Immutable depends_on graph keyed by service name.

    Built once at load time and shared by reference with the scheduler and
    the supervisor.
    """

    def __init__(self, order: Iterable[str], edges: Mapping[str, Tuple[Dependency, ...]]):
        self._order = tuple(order)
        self._edges = MappingProxyType(dict(edges))
        dependents: Dict[str, List[str]] = {name: [] for name in self._order}
        for name in self._order:
            for dep in self._edges[name]:
                dependents[dep.service].append(name)
        self._dependents = MappingProxyType({k: tuple(v) for k, v in dependents.items()})

    @property
    def order(self) -> Tuple[str, ...]:
        """Startup order: every service comes after all of its dependencies."""
        return self._order

    @property
    def shutdown_order(self) -> Tuple[str, ...]:
        return tuple(reversed(self._order))

    def dependencies_of(self, name: str) -> Tuple[Dependency, ...]:
        return self._edges[name]

    def dependents_of(self, name: str) -> Tuple[str, ...]:
        return self._dependents[name]

    def downstream_of(self, name: str) -> List[str]:
        """Every service that depends on ``name``, directly or transitively, in startup order."""
        reached: Set[str] = set()
        pending = [name]
        while pending:
            for dependent in self._dependents[pending.pop()]:
                if dependent not in reached:
                    reached.add(dependent)
                    pending.append(dependent)
        return [n for n in self._order if n in reached]

    def __contains__(self, name: object) -> bool:
        return name in self._edges

    def __len__(self) -> int:
        return len(self._order)


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def build(self, descriptors: Iterable[ServiceDefinition]) -> DependencyGraph:
        """
        Builds the dependency graph with a deterministic topological order.

        Uses Kahn's algorithm; among services whose dependencies are all
        placed, the one declared first goes next.

        :param descriptors: Service definitions in declaration order.
        :return: The dependency graph.
        :raises NotFoundError: If a service depends on an undeclared service.
        :raises CycleError: If the dependencies are not acyclic.
        """
        services = list(descriptors)
        position = {svc.name: index for index, svc in enumerate(services)}

        missing = []
        edges: Dict[str, Tuple[Dependency, ...]] = {}
        for svc in services:
            deps = {}
            for dep in svc.depends_on:
                if dep.service not in position:
                    missing.append(f"{svc.name} -> {dep.service}")
                    continue
                deps.setdefault(dep.service, dep)
            edges[svc.name] = tuple(deps.values())
        if missing:
            raise NotFoundError(
                "depends_on refers to undefined services: " + ", ".join(missing),
                [m.split(" -> ")[1] for m in missing],
            )

        remaining = {name: len(deps) for name, deps in edges.items()}
        dependents: Dict[str, List[str]] = {name: [] for name in edges}
        for name, deps in edges.items():
            for dep in deps:
                dependents[dep.service].append(name)

        ready = sorted((n for n, count in remaining.items() if count == 0), key=position.get)
        ordered: List[str] = []
        while ready:
            name = ready.pop(0)
            ordered.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=position.get)

        if len(ordered) != len(services):
            unplaced = [svc.name for svc in services if svc.name not in set(ordered)]
            raise CycleError(self._cycle_members(unplaced, edges))

        return DependencyGraph(ordered, edges)

    def resolve_order(self, descriptors: Iterable[ServiceDefinition]) -> List[str]:
        """Service names in the order they should be started."""
        return list(self.build(descriptors).order)

    def _cycle_members(self, candidates: List[str], edges: Mapping[str, Tuple[Dependency, ...]]) -> List[str]:
        """
        Of the services Kahn's algorithm could not place, keeps those that
        can reach themselves; the rest merely depend on a cycle.
        """
        candidate_set = set(candidates)
        members = []
        for start in candidates:
            seen: Set[str] = set()
            stack = [dep.service for dep in edges[start] if dep.service in candidate_set]
            while stack:
                current = stack.pop()
                if current == start:
                    members.append(start)
                    break
                if current in seen:
                    continue
                seen.add(current)
                stack.extend(dep.service for dep in edges[current] if dep.service in candidate_set)
        return members
