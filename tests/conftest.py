"""
Shared fixtures: a scripted container runtime for orchestration tests.
"""
import asyncio
from collections import defaultdict

import pytest

from stackpilot.MODELS.errors import LaunchError
from stackpilot.RUNNERS.container_runtime import ContainerRuntime


class FakeRuntime(ContainerRuntime):
    """
    Runtime whose instances run until told to exit.

    exit_codes[service]: codes successive launches exit with right away;
        None keeps that launch running.
    launch_failures[service]: number of launches that raise LaunchError.
    probe_codes[service]: exit code of health probes, or a callable
        taking the instance.
    health_at_launch[service]: health of every other service's launched
        instances when that service first launched.
    """

    def __init__(self):
        self.launched = []
        self.stopped = []
        self.bindings = {}
        self.probes = []
        self.exit_codes = defaultdict(list)
        self.launch_failures = defaultdict(int)
        self.probe_codes = {}
        self.health_at_launch = {}
        self._exits = {}

    def launched_services(self):
        return [instance.service for instance in self.launched]

    async def launch(self, instance, binding):
        if self.launch_failures[instance.service] > 0:
            self.launch_failures[instance.service] -= 1
            raise LaunchError(f"[{instance.instance_id}] cannot launch")
        others = {}
        for other in self.launched:
            if other.service != instance.service:
                others.setdefault(other.service, []).append(other.health)
        self.health_at_launch.setdefault(instance.service, others)
        self.bindings[instance.instance_id] = binding
        self.launched.append(instance)
        exited = asyncio.get_running_loop().create_future()
        self._exits[instance.instance_id] = exited
        instance.handle = exited
        script = self.exit_codes[instance.service]
        if script:
            code = script.pop(0)
            if code is not None:
                exited.set_result(code)

    async def wait(self, instance):
        return await asyncio.shield(self._exits[instance.instance_id])

    def exit(self, instance, code=0):
        exited = self._exits[instance.instance_id]
        if not exited.done():
            exited.set_result(code)

    async def stop(self, instance, timeout=10.0):
        self.stopped.append(instance.instance_id)
        self.exit(instance, -15)

    async def exec(self, instance, argv, timeout):
        self.probes.append((instance.instance_id, list(argv)))
        code = self.probe_codes.get(instance.service, 0)
        if callable(code):
            code = code(instance)
        return code, "ok" if code == 0 else "probe failed"


@pytest.fixture
def fake_runtime():
    return FakeRuntime()
