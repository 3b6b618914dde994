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
Health monitoring for instances: command, TCP and HTTP probes run on a
fixed interval, feeding a Docker-style starting/healthy/unhealthy state machine.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import httpx

from ..MODELS.runtime_instance import HealthResult, HealthStatus, InstanceState, RuntimeInstance
from ..MODELS.service_definition import HealthCheck, ProbeKind
from ..RUNNERS.container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 500


class HealthTracker:
    """
    Health state machine for one instance.

    Failures inside the start period are ignored until the first success.
    After that, or once the start period is over, ``retries`` consecutive
    failures make the instance unhealthy. Any success makes it healthy.
    """

    def __init__(self, check: HealthCheck, started_at: float):
        self.check = check
        self.started_at = started_at
        self.status = HealthStatus.STARTING
        self.failing_streak = 0
        self.ever_healthy = False

    def record(self, success: bool, now: float) -> HealthStatus:
        if success:
            self.status = HealthStatus.HEALTHY
            self.failing_streak = 0
            self.ever_healthy = True
            return self.status

        in_start_period = now - self.started_at < self.check.start_period
        if in_start_period and not self.ever_healthy:
            return self.status

        self.failing_streak += 1
        if self.failing_streak >= self.check.retries:
            self.status = HealthStatus.UNHEALTHY
        return self.status


class HealthCheckEngine:
    """
    Runs one periodic probe task per instance and reports status changes.

    Ticks are scheduled on a fixed interval from the instance's launch.
    A tick that arrives while the previous probe is still running is
    skipped rather than queued.
    """

    def __init__(self, runtime: ContainerRuntime,
                 on_change: Optional[Callable[[RuntimeInstance], None]] = None):
        """
        :param runtime: Runtime used to execute command probes.
        :param on_change: Called whenever an instance's health status changes.
        """
        self.runtime = runtime
        self.on_change = on_change
        self._tasks: Dict[str, asyncio.Task] = {}

    def watch(self, instance: RuntimeInstance) -> None:
        """Starts probing an instance. Instances without a health check are ignored."""
        if instance.descriptor.health_check is None or instance.instance_id in self._tasks:
            return
        self._tasks[instance.instance_id] = asyncio.create_task(
            self._monitor_loop(instance), name=f"health:{instance.instance_id}"
        )

    def unwatch(self, instance: RuntimeInstance) -> None:
        """Stops probing an instance, cancelling any in-flight probe."""
        task = self._tasks.pop(instance.instance_id, None)
        if task is not None:
            task.cancel()

    def is_watching(self, instance: RuntimeInstance) -> bool:
        return instance.instance_id in self._tasks

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _monitor_loop(self, instance: RuntimeInstance) -> None:
        hc = instance.descriptor.health_check
        loop = asyncio.get_running_loop()
        tracker = HealthTracker(hc, loop.time())
        next_tick = tracker.started_at + hc.interval
        in_flight: Optional[asyncio.Task] = None
        try:
            while True:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                now = loop.time()
                while next_tick <= now:
                    next_tick += hc.interval
                if in_flight is not None and not in_flight.done():
                    logger.debug("[%s] probe still running, skipping tick", instance.instance_id)
                    continue
                in_flight = asyncio.create_task(self._probe_and_record(instance, tracker))
        finally:
            if in_flight is not None:
                in_flight.cancel()

    async def _probe_and_record(self, instance: RuntimeInstance, tracker: HealthTracker) -> None:
        result = await self.probe(instance)
        previous = instance.health
        status = tracker.record(result.success, asyncio.get_running_loop().time())
        instance.last_result = result
        instance.health = status
        if instance.state.is_up:
            instance.state = InstanceState(status.value)
        if status != previous:
            log = logger.info if status == HealthStatus.HEALTHY else logger.warning
            log("[%s] health %s -> %s", instance.instance_id, previous.value, status.value)
            if self.on_change:
                self.on_change(instance)

    async def probe(self, instance: RuntimeInstance) -> HealthResult:
        """
        Runs the instance's health check once. Never raises for a failing
        probe; a probe exceeding the timeout counts as a failure.
        """
        hc = instance.descriptor.health_check
        checked_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            success, output = await asyncio.wait_for(self._run_probe(instance, hc), hc.timeout)
        except asyncio.TimeoutError:
            success, output = False, f"Health check exceeded timeout ({hc.timeout:g}s)"
        except Exception as e:
            success, output = False, str(e) or type(e).__name__
        logger.debug("[%s] probe %s: %s", instance.instance_id, "ok" if success else "failed", output)
        return HealthResult(success=success, output=output[:OUTPUT_LIMIT], checked_at=checked_at)

    async def _run_probe(self, instance: RuntimeInstance, hc: HealthCheck):
        if hc.kind == ProbeKind.CMD:
            code, output = await self.runtime.exec(instance, hc.test, hc.timeout)
            return code == 0, output or f"Exit code: {code}"
        if hc.kind == ProbeKind.CMD_SHELL:
            code, output = await self.runtime.exec(instance, ["/bin/sh", "-c", hc.test[0]], hc.timeout)
            return code == 0, output or f"Exit code: {code}"
        if hc.kind == ProbeKind.TCP:
            host, _, port = hc.test[0].rpartition(":")
            reader, writer = await asyncio.open_connection(host or "127.0.0.1", int(port))
            writer.close()
            await writer.wait_closed()
            return True, f"connected to {hc.test[0]}"
        if hc.kind == ProbeKind.HTTP:
            async with httpx.AsyncClient(timeout=hc.timeout) as client:
                response = await client.get(hc.test[0])
            return 200 <= response.status_code < 400, f"HTTP {response.status_code}"
        raise ValueError(f"unknown probe kind {hc.kind}")
