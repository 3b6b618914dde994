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
Orchestration for multiple services, managing dependencies and health.
"""
import asyncio
import dataclasses
import logging
from typing import Callable, Dict, List, Optional, Set

from ..MODELS.errors import (
    DependencyFailedError,
    LaunchError,
    StackpilotError,
    StartupTimeoutError,
)
from ..MODELS.runtime_instance import (
    HealthStatus,
    InstanceSnapshot,
    InstanceState,
    RuntimeInstance,
    ServiceState,
    ServiceStatus,
)
from ..MODELS.service_definition import Dependency, DependencyCondition
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.container_runtime import ContainerRuntime
from ..RUNNERS.dependency_resolver import DependencyGraph, DependencyResolver
from ..UTILS.status_channel import StatusChannel
from .binder import ResourceBinder
from .descriptor_store import DescriptorStore
from .health_monitor import HealthCheckEngine
from .restart_supervisor import RestartSupervisor

logger = logging.getLogger(__name__)

_NOT_LAUNCHED = (ServiceState.PENDING, ServiceState.WAITING, ServiceState.NOT_STARTED)


class ServiceOrchestrator:
    """
    Starts services in dependency order and supervises them.

    Every service gets its own task: it waits for its dependencies, then
    launches its replicas in parallel, each under the restart supervisor.
    A service that cannot start only affects the services depending on it.
    """
    def __init__(self,
                 store: DescriptorStore,
                 runtime: ContainerRuntime,
                 settings: Optional[OrchestratorSettings] = None,
                 graph: Optional[DependencyGraph] = None):
        """
        Initializes the orchestrator.

        :param store: Loaded service definitions.
        :param runtime: Runtime instances are launched with.
        :param settings: Orchestrator settings.
        :param graph: Dependency graph; built from the store when omitted.
        :raises NotFoundError: If a dependency names an undeclared service.
        :raises CycleError: If the dependencies are not acyclic.
        """
        self.store = store
        self.runtime = runtime
        self.settings = settings or OrchestratorSettings()
        self.graph = graph or DependencyResolver().build(store.descriptors())
        self.binder = ResourceBinder(store, self.settings.state_dir)
        self.health_engine = HealthCheckEngine(runtime, on_change=self._instance_changed)
        self.supervisor = RestartSupervisor(
            runtime,
            self._launch_instance,
            self.settings,
            on_change=self._instance_changed,
            on_replace=self._instance_replaced,
        )

        self._status: Dict[str, ServiceStatus] = {}
        self._channels: Dict[str, StatusChannel[ServiceStatus]] = {}
        self._instances: Dict[str, List[RuntimeInstance]] = {}
        self._service_tasks: Dict[str, asyncio.Task] = {}
        self._replica_tasks: Dict[str, List[asyncio.Task]] = {}
        self._active: Dict[str, int] = {}
        # replica slots that launched at least once / launched or gave up
        self._launched: Dict[str, Set[int]] = {}
        self._settled: Dict[str, Set[int]] = {}
        # dependency conditions, once met, stay met
        self._started: Set[str] = set()
        self._healthy: Set[str] = set()
        self._operator_stopped: Set[str] = set()
        for name in self.graph.order:
            self._status[name] = ServiceStatus(name=name)
            self._instances[name] = []
            self._channels[name] = StatusChannel(self._snapshot(name))
            self._replica_tasks[name] = []
            self._active[name] = 0
            self._launched[name] = set()
            self._settled[name] = set()

    @classmethod
    def from_file(cls, compose_path: str, runtime: ContainerRuntime,
                  settings: Optional[OrchestratorSettings] = None) -> "ServiceOrchestrator":
        """Loads a compose file and builds an orchestrator for it."""
        store = DescriptorStore()
        store.load_file(compose_path)
        return cls(store, runtime, settings)

    async def start(self) -> Dict[str, ServiceStatus]:
        """
        Starts every service.

        Returns once each service has launched all its replicas or is known
        not to start. Supervision continues in the background until
        :meth:`stop` or :meth:`down`.
        """
        logger.info("Starting services in order: %s", ", ".join(self.graph.order))
        for name in self.graph.order:
            if name not in self._service_tasks and name not in self._operator_stopped:
                self._service_tasks[name] = asyncio.create_task(
                    self._start_service(name), name=f"start:{name}"
                )
        await asyncio.gather(*self._service_tasks.values(), return_exceptions=True)
        return self.statuses()

    async def _start_service(self, name: str) -> None:
        descriptor = self.store.get(name)
        if self.graph.dependencies_of(name):
            self._set_state(name, ServiceState.WAITING)
        try:
            await self._wait_for_dependencies(name)
        except (StartupTimeoutError, DependencyFailedError) as e:
            logger.error("Service %s not started: %s", name, e)
            self._set_state(name, ServiceState.NOT_STARTED, error=str(e))
            return

        logger.info("Starting service: %s (%d replicas)", name, descriptor.replicas)
        self._set_state(name, ServiceState.RUNNING)
        for replica in range(1, descriptor.replicas + 1):
            instance = RuntimeInstance(descriptor=descriptor, replica=replica)
            self._instances[name].append(instance)
            self._active[name] += 1
            self._replica_tasks[name].append(asyncio.create_task(
                self._supervise_replica(instance), name=f"supervise:{instance.instance_id}"
            ))
        self._refresh(name)
        await self._channels[name].wait_for(
            lambda status: len(self._settled[name]) >= descriptor.replicas
        )

    async def _wait_for_dependencies(self, name: str) -> None:
        """
        Suspends until every dependency meets its condition. All
        dependencies share one deadline.

        :raises StartupTimeoutError: If the deadline elapses first.
        :raises DependencyFailedError: If a dependency can no longer get there.
        """
        loop = asyncio.get_running_loop()
        timeout = self.settings.dependency_timeout
        deadline = loop.time() + timeout
        for dep in self.graph.dependencies_of(name):
            if self._condition_met(name, dep):
                continue
            try:
                await self._channels[dep.service].wait_for(
                    lambda status, dep=dep: self._condition_met(name, dep),
                    max(0.0, deadline - loop.time()),
                )
            except asyncio.TimeoutError:
                raise StartupTimeoutError(name, dep.service, dep.condition.value, timeout) from None
            logger.debug("Service %s: dependency %s is %s", name, dep.service, dep.condition.value)

    def _condition_met(self, name: str, dep: Dependency) -> bool:
        if dep.condition == DependencyCondition.HEALTHY:
            met = dep.service in self._healthy
        else:
            met = dep.service in self._started
        if met:
            return True
        state = self._status[dep.service].state
        if state.is_terminal:
            raise DependencyFailedError(name, dep.service, state.value)
        return False

    async def _supervise_replica(self, instance: RuntimeInstance) -> None:
        name = instance.service
        try:
            await self.supervisor.supervise(instance)
        except StackpilotError as e:
            logger.error("[%s] %s", instance.instance_id, e)
            for current in self._instances[name]:
                if current.replica == instance.replica:
                    current.state = InstanceState.FAILED
            self._status[name].error = str(e)
        finally:
            self._active[name] -= 1
            self._settled[name].add(instance.replica)
            self._refresh(name)

    async def _launch_instance(self, instance: RuntimeInstance) -> None:
        """Binds and launches one instance. Called by the supervisor for every (re)launch."""
        binding = self.binder.bind(instance.descriptor)
        try:
            await self.runtime.launch(instance, binding)
        except OSError as e:
            raise LaunchError(f"[{instance.instance_id}] failed to start: {e}") from e
        instance.launched_at = asyncio.get_running_loop().time()
        if instance.descriptor.health_check is not None:
            instance.state = InstanceState.STARTING
            instance.health = HealthStatus.STARTING
            self.health_engine.watch(instance)
        else:
            instance.state = InstanceState.RUNNING
        self._launched[instance.service].add(instance.replica)
        self._instance_changed(instance)

    def _instance_changed(self, instance: RuntimeInstance) -> None:
        if not instance.state.is_up:
            self.health_engine.unwatch(instance)
            self._settled[instance.service].add(instance.replica)
        elif instance.launched_at is not None:
            self._settled[instance.service].add(instance.replica)
        self._refresh(instance.service)

    def _instance_replaced(self, old: RuntimeInstance, new: RuntimeInstance) -> None:
        self.health_engine.unwatch(old)
        instances = self._instances[old.service]
        instances[instances.index(old)] = new
        self._refresh(old.service)

    def _refresh(self, name: str) -> None:
        """Recomputes a service's status from its instances and publishes it."""
        status = self._status[name]
        if name not in self._operator_stopped and status.state not in _NOT_LAUNCHED:
            status.state = self._aggregate_state(name)
            replicas = self.store.get(name).replicas
            if len(self._launched[name]) >= replicas and status.state == ServiceState.RUNNING:
                self._started.add(name)
                instances = self._instances[name]
                # with no instances no probe has ever passed
                if instances and all(i.state.is_up and i.health == HealthStatus.HEALTHY for i in instances):
                    self._healthy.add(name)
        status.restart_count = self.supervisor.restart_counts.get(name, 0)
        status.health = self._aggregate_health(name)
        self._channels[name].publish(self._snapshot(name))

    def _aggregate_state(self, name: str) -> ServiceState:
        instances = self._instances[name]
        if any(i.state.is_up and i.launched_at is not None for i in instances):
            return ServiceState.RUNNING
        if self._active[name]:
            if all(i.state.is_up and i.restart_count == 0 for i in instances):
                return ServiceState.RUNNING
            return ServiceState.RESTARTING
        if not instances:
            return ServiceState.RUNNING
        if any(i.state == InstanceState.FAILED for i in instances):
            return ServiceState.FAILED
        return ServiceState.STOPPED

    def _aggregate_health(self, name: str) -> HealthStatus:
        if self.store.get(name).health_check is None:
            return HealthStatus.NONE
        up = [i for i in self._instances[name] if i.state.is_up]
        if not up:
            return HealthStatus.UNHEALTHY if self._instances[name] else HealthStatus.NONE
        if any(i.health == HealthStatus.UNHEALTHY for i in up):
            return HealthStatus.UNHEALTHY
        if all(i.health == HealthStatus.HEALTHY for i in up):
            return HealthStatus.HEALTHY
        return HealthStatus.STARTING

    def _set_state(self, name: str, state: ServiceState, error: Optional[str] = None) -> None:
        self._status[name].state = state
        if error is not None:
            self._status[name].error = error
        self._channels[name].publish(self._snapshot(name))

    def _snapshot(self, name: str) -> ServiceStatus:
        return dataclasses.replace(self._status[name], instances=[
            InstanceSnapshot(
                instance_id=i.instance_id,
                replica=i.replica,
                state=i.state,
                health=i.health,
                restart_count=i.restart_count,
                exit_code=i.exit_code,
            )
            for i in self._instances[name]
        ])

    def status(self, name: str) -> ServiceStatus:
        """
        Returns the current status of a service.

        :raises NotFoundError: If the service does not exist.
        """
        self.store.get(name)
        return self._snapshot(name)

    def statuses(self) -> Dict[str, ServiceStatus]:
        """Status of every service, in startup order."""
        return {name: self._snapshot(name) for name in self.graph.order}

    def instances(self, name: str) -> List[RuntimeInstance]:
        """Current instance of every replica slot of a service."""
        self.store.get(name)
        return list(self._instances[name])

    async def wait_for_status(self, name: str,
                              predicate: Callable[[ServiceStatus], bool],
                              timeout: Optional[float] = None) -> ServiceStatus:
        """
        Suspends until a service's status satisfies ``predicate``.

        :raises NotFoundError: If the service does not exist.
        :raises asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        self.store.get(name)
        return await self._channels[name].wait_for(predicate, timeout)

    async def stop(self, name: str) -> ServiceStatus:
        """
        Operator-initiated stop of one service.

        Cancels a pending dependency wait, in-flight probes and restart
        backoffs, then stops the instances. Nothing is relaunched
        afterwards, whatever the restart policy.

        :raises NotFoundError: If the service does not exist.
        """
        self.store.get(name)
        self._operator_stopped.add(name)
        logger.info("Stopping service: %s...", name)

        for instance in self._instances[name]:
            instance.operator_stopped = True
            self.health_engine.unwatch(instance)

        tasks = list(self._replica_tasks[name])
        service_task = self._service_tasks.get(name)
        if service_task is not None:
            tasks.append(service_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await asyncio.gather(*(
            self.runtime.stop(i, self.settings.stop_timeout)
            for i in self._instances[name] if i.launched_at is not None and i.state.is_up
        ))
        for instance in self._instances[name]:
            instance.operator_stopped = True
            self.health_engine.unwatch(instance)
            if instance.state.is_up:
                instance.state = InstanceState.STOPPED

        if self._status[name].state != ServiceState.NOT_STARTED:
            self._status[name].state = ServiceState.STOPPED
        self._refresh(name)
        logger.info("Service %s stopped.", name)
        return self._snapshot(name)

    async def down(self) -> None:
        """
        Stops all services in reverse dependency order.
        """
        for name in self.graph.shutdown_order:
            if name not in self._operator_stopped:
                await self.stop(name)
        await self.health_engine.close()
