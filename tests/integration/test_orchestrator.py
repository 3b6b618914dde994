import asyncio

import pytest

from stackpilot.MANAGERS.descriptor_store import DescriptorStore
from stackpilot.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackpilot.MODELS.errors import CycleError, NotFoundError
from stackpilot.MODELS.runtime_instance import HealthStatus, ServiceState
from stackpilot.MODELS.service_definition import (
    Dependency,
    DependencyCondition,
    HealthCheck,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
)
from stackpilot.MODELS.settings import OrchestratorSettings

FAST_CHECK = HealthCheck(test=["check"], interval=0.01, timeout=1, retries=1)


def svc(name, *deps, healthy=(), **fields):
    depends_on = [Dependency(service=d) for d in deps]
    depends_on += [Dependency(service=d, condition=DependencyCondition.HEALTHY) for d in healthy]
    return ServiceDefinition(name=name, image="app", command=["run", name], depends_on=depends_on, **fields)


def orchestrator_for(tmp_path, runtime, services, **settings):
    store = DescriptorStore()
    store.load(services, base_dir=str(tmp_path))
    settings.setdefault("dependency_timeout", 2)
    return ServiceOrchestrator(store, runtime, OrchestratorSettings(**settings))


def run(coro, timeout=10):
    return asyncio.run(asyncio.wait_for(coro, timeout))


def abc_topology():
    return [
        svc("a"),
        svc("b", "a", health_check=FAST_CHECK),
        svc("c", healthy=["b"]),
    ]


def test_starts_in_dependency_order(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(tmp_path, fake_runtime, abc_topology())

    async def scenario():
        statuses = await orchestrator.start()
        await orchestrator.down()
        return statuses

    statuses = run(scenario())
    assert fake_runtime.launched_services() == ["a", "b", "c"]
    assert [s.state for s in statuses.values()] == [ServiceState.RUNNING] * 3
    assert statuses["b"].health == HealthStatus.HEALTHY
    assert statuses["a"].health == HealthStatus.NONE
    # c only launched once b was healthy
    assert fake_runtime.health_at_launch["c"]["b"] == [HealthStatus.HEALTHY]
    assert fake_runtime.health_at_launch["b"]["a"] == [HealthStatus.NONE]


def test_unhealthy_dependency_times_out_only_its_dependents(tmp_path, fake_runtime):
    fake_runtime.probe_codes["b"] = 1
    orchestrator = orchestrator_for(
        tmp_path, fake_runtime, abc_topology() + [svc("d", healthy=["b"]), svc("e", "c")],
        dependency_timeout=0.3,
    )

    async def scenario():
        statuses = await orchestrator.start()
        await orchestrator.down()
        return statuses

    statuses = run(scenario())
    assert fake_runtime.launched_services() == ["a", "b"]
    assert statuses["a"].state == ServiceState.RUNNING
    assert statuses["b"].state == ServiceState.RUNNING
    assert statuses["b"].health == HealthStatus.UNHEALTHY
    assert statuses["c"].state == ServiceState.NOT_STARTED
    assert "not healthy after 0.3s" in statuses["c"].error
    assert statuses["d"].state == ServiceState.NOT_STARTED
    assert statuses["e"].state == ServiceState.NOT_STARTED


def test_failed_dependency_fails_dependents_without_waiting(tmp_path, fake_runtime):
    fake_runtime.launch_failures["a"] = 1
    orchestrator = orchestrator_for(
        tmp_path, fake_runtime, [svc("a"), svc("b", "a"), svc("c", "b"), svc("other")],
        dependency_timeout=60,
    )

    async def scenario():
        loop = asyncio.get_running_loop()
        began = loop.time()
        statuses = await orchestrator.start()
        elapsed = loop.time() - began
        await orchestrator.down()
        return statuses, elapsed

    statuses, elapsed = run(scenario())
    assert elapsed < 5
    assert statuses["a"].state == ServiceState.FAILED
    assert statuses["b"].state == ServiceState.NOT_STARTED
    assert "dependency a is failed" in statuses["b"].error
    assert statuses["c"].state == ServiceState.NOT_STARTED
    assert statuses["other"].state == ServiceState.RUNNING


def test_replicas_launch_in_parallel(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("web", replicas=3)])

    async def scenario():
        statuses = await orchestrator.start()
        instances = orchestrator.instances("web")
        await orchestrator.down()
        return statuses, instances

    statuses, instances = run(scenario())
    assert [i.replica for i in instances] == [1, 2, 3]
    assert len({i.instance_id for i in instances}) == 3
    assert len(statuses["web"].instances) == 3
    assert fake_runtime.launched_services() == ["web"] * 3


def test_zero_replicas_counts_as_started(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("optional", replicas=0), svc("app", "optional")])

    async def scenario():
        statuses = await orchestrator.start()
        await orchestrator.down()
        return statuses

    statuses = run(scenario())
    assert fake_runtime.launched_services() == ["app"]
    assert statuses["app"].state == ServiceState.RUNNING


def test_zero_replicas_never_counts_as_healthy(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(
        tmp_path, fake_runtime, [svc("db", health_check=FAST_CHECK), svc("api", healthy=["db"])],
        dependency_timeout=0.3,
    )
    # scaled down after load, so the store check does not see it
    orchestrator.store.get("db").replicas = 0

    async def scenario():
        statuses = await orchestrator.start()
        await orchestrator.down()
        return statuses

    statuses = run(scenario())
    assert fake_runtime.launched_services() == []
    assert statuses["db"].health != HealthStatus.HEALTHY
    assert statuses["api"].state == ServiceState.NOT_STARTED
    assert "not healthy after 0.3s" in statuses["api"].error


def test_on_failure_restarts_until_limit(tmp_path, fake_runtime):
    policy = RestartPolicy(condition=RestartPolicyCondition.ON_FAILURE, max_retries=2)
    fake_runtime.exit_codes["job"] = [1, 1, 1]
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("job", restart_policy=policy)])
    sleeps = []

    async def no_sleep(seconds):
        sleeps.append(seconds)

    orchestrator.supervisor.sleep = no_sleep

    async def scenario():
        await orchestrator.start()
        status = await orchestrator.wait_for_status("job", lambda s: s.state == ServiceState.FAILED, 5)
        await orchestrator.down()
        return status

    status = run(scenario())
    assert len(fake_runtime.launched) == 3
    assert status.restart_count == 2
    assert sleeps == [1.0, 2.0]
    assert status.instances[0].restart_count == 2
    assert status.instances[0].exit_code == 1


def test_never_policy_leaves_service_stopped(tmp_path, fake_runtime):
    fake_runtime.exit_codes["once"] = [0]
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("once")])

    async def scenario():
        await orchestrator.start()
        status = await orchestrator.wait_for_status("once", lambda s: s.state == ServiceState.STOPPED, 5)
        await orchestrator.down()
        return status

    status = run(scenario())
    assert len(fake_runtime.launched) == 1
    assert status.restart_count == 0


def test_operator_stop_suppresses_unless_stopped(tmp_path, fake_runtime):
    policy = RestartPolicy(condition=RestartPolicyCondition.UNLESS_STOPPED)
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("api", restart_policy=policy)])

    async def scenario():
        await orchestrator.start()
        stopped = await orchestrator.stop("api")
        await asyncio.sleep(0.05)
        return stopped

    status = run(scenario())
    assert status.state == ServiceState.STOPPED
    assert len(fake_runtime.launched) == 1
    assert fake_runtime.stopped == [fake_runtime.launched[0].instance_id]
    assert fake_runtime.launched[0].operator_stopped


def test_stop_cancels_dependency_wait(tmp_path, fake_runtime):
    fake_runtime.probe_codes["db"] = 1
    orchestrator = orchestrator_for(
        tmp_path, fake_runtime, [svc("db", health_check=FAST_CHECK), svc("api", healthy=["db"])],
        dependency_timeout=60,
    )

    async def scenario():
        starting = asyncio.create_task(orchestrator.start())
        await orchestrator.wait_for_status("api", lambda s: s.state == ServiceState.WAITING, 5)
        status = await orchestrator.stop("api")
        await asyncio.wait_for(starting, 5)
        await orchestrator.down()
        return status

    status = run(scenario())
    assert status.state == ServiceState.STOPPED
    assert fake_runtime.launched_services() == ["db"]


def test_status_of_unknown_service(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("a")])
    with pytest.raises(NotFoundError):
        orchestrator.status("missing")
    with pytest.raises(NotFoundError):
        run(orchestrator.stop("missing"))
    assert orchestrator.status("a").state == ServiceState.PENDING


def test_down_stops_in_reverse_order(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [svc("db"), svc("api", "db"), svc("web", "api")])

    async def scenario():
        await orchestrator.start()
        await orchestrator.down()

    run(scenario())
    stopped_services = [i.split("-")[0] for i in fake_runtime.stopped]
    assert stopped_services == ["web", "api", "db"]
    assert all(s.state == ServiceState.STOPPED for s in orchestrator.statuses().values())


def test_instances_receive_discovery_environment(tmp_path, fake_runtime):
    orchestrator = orchestrator_for(tmp_path, fake_runtime, [
        svc("db", ports=[{"container": 5432}]),
        svc("api", "db", environment={"MODE": "test"}),
    ])

    async def scenario():
        await orchestrator.start()
        await orchestrator.down()

    run(scenario())
    api = [i for i in fake_runtime.launched if i.service == "api"][0]
    env = fake_runtime.bindings[api.instance_id].environment
    assert env["DB_HOST"] == "127.0.0.1"
    assert env["DB_PORT"] == "5432"
    assert env["MODE"] == "test"


def test_graph_errors_surface_at_construction(tmp_path, fake_runtime):
    store = DescriptorStore()
    store.load([svc("a", "b"), svc("b", "a")], base_dir=str(tmp_path))
    with pytest.raises(CycleError):
        ServiceOrchestrator(store, fake_runtime)

    store.load([svc("a", "ghost")], base_dir=str(tmp_path))
    with pytest.raises(NotFoundError):
        ServiceOrchestrator(store, fake_runtime)
