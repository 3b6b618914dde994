import asyncio

import httpx
import pytest

from stackpilot.MANAGERS.health_monitor import HealthCheckEngine, HealthTracker
from stackpilot.MODELS.runtime_instance import HealthStatus, InstanceState, RuntimeInstance
from stackpilot.MODELS.service_definition import HealthCheck, ProbeKind, ServiceDefinition


def instance_with(check):
    return RuntimeInstance(descriptor=ServiceDefinition(name="svc", image="app", health_check=check))


class TestHealthTracker:
    """Tests for the per-instance health state machine."""

    def test_failures_in_start_period_are_ignored(self):
        tracker = HealthTracker(HealthCheck(test=["true"], retries=1, start_period=10), started_at=0)
        for now in range(1, 10):
            assert tracker.record(False, now) == HealthStatus.STARTING
        assert tracker.failing_streak == 0
        assert tracker.record(False, 10) == HealthStatus.UNHEALTHY

    def test_success_in_start_period_ends_grace(self):
        tracker = HealthTracker(HealthCheck(test=["true"], retries=2, start_period=100), started_at=0)
        assert tracker.record(True, 1) == HealthStatus.HEALTHY
        assert tracker.record(False, 2) == HealthStatus.HEALTHY
        assert tracker.record(False, 3) == HealthStatus.UNHEALTHY

    def test_needs_consecutive_failures(self):
        tracker = HealthTracker(HealthCheck(test=["true"], retries=3), started_at=0)
        assert tracker.record(True, 1) == HealthStatus.HEALTHY
        tracker.record(False, 2)
        tracker.record(False, 3)
        assert tracker.record(True, 4) == HealthStatus.HEALTHY
        tracker.record(False, 5)
        tracker.record(False, 6)
        assert tracker.status == HealthStatus.HEALTHY
        assert tracker.record(False, 7) == HealthStatus.UNHEALTHY
        assert tracker.record(True, 8) == HealthStatus.HEALTHY


class TestHealthCheckEngine:
    """Tests for probe execution and the periodic monitor."""

    def test_command_probe_goes_through_runtime(self, fake_runtime):
        instance = instance_with(HealthCheck(test=["pg_isready", "-U", "admin"]))
        result = asyncio.run(HealthCheckEngine(fake_runtime).probe(instance))
        assert result.success
        assert fake_runtime.probes == [(instance.instance_id, ["pg_isready", "-U", "admin"])]

    def test_shell_probe(self, fake_runtime):
        instance = instance_with(HealthCheck(kind=ProbeKind.CMD_SHELL, test=["exit 1"]))
        fake_runtime.probe_codes["svc"] = 1
        result = asyncio.run(HealthCheckEngine(fake_runtime).probe(instance))
        assert not result.success
        assert fake_runtime.probes[0][1] == ["/bin/sh", "-c", "exit 1"]

    def test_probe_timeout_counts_as_failure(self, fake_runtime):
        class SlowRuntime(type(fake_runtime)):
            async def exec(self, instance, argv, timeout):
                await asyncio.sleep(10)
                return 0, ""

        instance = instance_with(HealthCheck(test=["sleep", "10"], timeout=0.05))
        result = asyncio.run(HealthCheckEngine(SlowRuntime()).probe(instance))
        assert not result.success
        assert "timeout" in result.output

    def test_probe_errors_count_as_failure(self, fake_runtime):
        instance = instance_with(HealthCheck(test=["true"]))
        # never launched, so the runtime cannot exec into it
        class BrokenRuntime(type(fake_runtime)):
            async def exec(self, instance, argv, timeout):
                raise OSError("no such process")

        result = asyncio.run(HealthCheckEngine(BrokenRuntime()).probe(instance))
        assert not result.success
        assert "no such process" in result.output

    def test_tcp_probe(self, fake_runtime):
        async def scenario():
            server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
            port = server.sockets[0].getsockname()[1]
            engine = HealthCheckEngine(fake_runtime)
            try:
                up = await engine.probe(instance_with(HealthCheck(kind=ProbeKind.TCP, test=[f"127.0.0.1:{port}"])))
            finally:
                server.close()
                await server.wait_closed()
            down = await engine.probe(instance_with(HealthCheck(kind=ProbeKind.TCP, test=[f"127.0.0.1:{port}"],
                                                                timeout=1)))
            return up, down

        up, down = asyncio.run(scenario())
        assert up.success
        assert not down.success

    def test_http_probe(self, fake_runtime, monkeypatch):
        def handler(request):
            return httpx.Response(200 if request.url.path == "/health" else 503)

        transport = httpx.MockTransport(handler)
        original = httpx.AsyncClient

        def client(**kwargs):
            return original(transport=transport, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client)
        engine = HealthCheckEngine(fake_runtime)
        ok = asyncio.run(engine.probe(instance_with(HealthCheck(kind=ProbeKind.HTTP, test=["http://app/health"]))))
        bad = asyncio.run(engine.probe(instance_with(HealthCheck(kind=ProbeKind.HTTP, test=["http://app/down"]))))
        assert ok.success and ok.output == "HTTP 200"
        assert not bad.success and bad.output == "HTTP 503"

    def test_monitor_reports_changes(self, fake_runtime):
        instance = instance_with(HealthCheck(test=["check"], interval=0.01, retries=2))
        instance.state = InstanceState.STARTING
        codes = iter([0, 1, 1, 0])
        fake_runtime.probe_codes["svc"] = lambda _: next(codes, 0)
        changes = []

        async def scenario():
            engine = HealthCheckEngine(fake_runtime, on_change=lambda i: changes.append(i.health))
            engine.watch(instance)
            assert engine.is_watching(instance)
            while len(changes) < 3:
                await asyncio.sleep(0.01)
            engine.unwatch(instance)
            assert not engine.is_watching(instance)
            await engine.close()

        asyncio.run(asyncio.wait_for(scenario(), 5))
        assert changes == [HealthStatus.HEALTHY, HealthStatus.UNHEALTHY, HealthStatus.HEALTHY]
        assert instance.state == InstanceState.HEALTHY
        assert instance.last_result.success

    def test_overlapping_tick_is_skipped(self, fake_runtime):
        calls = []

        class SlowProbeRuntime(type(fake_runtime)):
            async def exec(self, instance, argv, timeout):
                calls.append(asyncio.get_running_loop().time())
                await asyncio.sleep(0.1)
                return 0, ""

        instance = instance_with(HealthCheck(test=["slow"], interval=0.02, timeout=1))

        async def scenario():
            engine = HealthCheckEngine(SlowProbeRuntime())
            engine.watch(instance)
            await asyncio.sleep(0.25)
            await engine.close()

        asyncio.run(scenario())
        # one probe per 0.1s at most, not one per 0.02s tick
        assert 1 <= len(calls) <= 3
