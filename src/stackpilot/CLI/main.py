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
Command Line Interface for stackpilot.
"""
import asyncio
import logging
import os
import signal
from typing import Dict

import click
import yaml

from ..MANAGERS.descriptor_store import DescriptorStore
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.errors import StackpilotError
from ..MODELS.runtime_instance import ServiceState, ServiceStatus
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.dependency_resolver import DependencyGraph, DependencyResolver
from ..RUNNERS.process_runner import ProcessRuntime

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.option('--file', '-f', default='compose.yaml', help='Compose file path')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              default=None, help='Log level (default: $STACKPILOT_LOG_LEVEL or INFO)')
@click.pass_context
def cli(ctx, file, log_level):
    """
    stackpilot - runs a multi-service compose topology as local processes.

    Services start in dependency order, are health-checked and restarted
    according to their restart policy.
    """
    ctx.ensure_object(dict)
    try:
        settings = OrchestratorSettings.from_env(log_level=log_level)
    except ValueError as e:
        raise click.ClickException(f"invalid settings: {e}")
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    ctx.obj['file'] = file
    ctx.obj['settings'] = settings


def _load(ctx) -> DescriptorStore:
    file = ctx.obj['file']
    if not os.path.exists(file):
        raise click.ClickException(f"{file} not found.")
    store = DescriptorStore()
    try:
        store.load_file(file)
    except StackpilotError as e:
        raise click.ClickException(str(e))
    return store


def _graph(store: DescriptorStore) -> DependencyGraph:
    try:
        return DependencyResolver().build(store.descriptors())
    except StackpilotError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the compose file and print the resolved services."""
    store = _load(ctx)
    _graph(store)
    document = {
        'services': {
            s.name: s.model_dump(mode='json', exclude={'name'}, exclude_none=True)
            for s in store
        },
        'networks': {
            name: n.model_dump(mode='json', exclude={'name'}, exclude_none=True)
            for name, n in store.networks.items()
        },
        'volumes': {
            name: v.model_dump(mode='json', exclude={'name'}, exclude_none=True)
            for name, v in store.volumes.items()
        },
    }
    click.echo(yaml.safe_dump(document, sort_keys=False), nl=False)


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the startup order and what each service waits for."""
    graph = _graph(_load(ctx))
    for position, name in enumerate(graph.order, 1):
        deps = graph.dependencies_of(name)
        if deps:
            waits = ", ".join(f"{d.service}: {d.condition.value}" for d in deps)
            click.echo(f"{position:>3}. {name}  (after {waits})")
        else:
            click.echo(f"{position:>3}. {name}")


@cli.command()
@click.option('--dependency-timeout', type=float, default=None,
              help='Seconds a service waits for its dependencies')
@click.option('--exit-after-start', is_flag=True,
              help='Stop everything once startup has completed')
@click.pass_context
def up(ctx, dependency_timeout, exit_after_start):
    """Start services defined in the compose file."""
    store = _load(ctx)
    graph = _graph(store)
    settings = ctx.obj['settings']
    if dependency_timeout is not None:
        settings = settings.model_copy(update={'dependency_timeout': dependency_timeout})
    runtime = ProcessRuntime(store.base_dir, settings.state_dir)
    orchestrator = ServiceOrchestrator(store, runtime, settings, graph=graph)

    statuses = asyncio.run(_run(orchestrator, exit_after_start))
    if any(s.state in (ServiceState.NOT_STARTED, ServiceState.FAILED) for s in statuses.values()):
        ctx.exit(1)


async def _run(orchestrator: ServiceOrchestrator, exit_after_start: bool) -> Dict[str, ServiceStatus]:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # no signal support on this loop
    try:
        statuses = await orchestrator.start()
        _print_status(statuses)
        if not exit_after_start:
            click.echo("Running... Press Ctrl+C to stop.")
            await stop.wait()
            click.echo("\nStopping services...")
    finally:
        await orchestrator.down()
    _print_status(orchestrator.statuses())
    return statuses


def _print_status(statuses: Dict[str, ServiceStatus]):
    click.echo(f"{'SERVICE':20} {'STATE':12} {'HEALTH':10} {'RESTARTS':8}")
    click.echo("-" * 53)
    for name, status in statuses.items():
        click.echo(f"{name:20} {status.state.value:12} {status.health.value:10} {status.restart_count:<8}")
        if status.error:
            click.echo(f"  {status.error}")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--follow', '-F', is_flag=True, help='Keep printing new lines')
@click.option('--tail', '-n', type=int, default=None, help='Number of lines to show per service')
@click.pass_context
def logs(ctx, services, follow, tail):
    """Show instance logs."""
    store = _load(ctx)
    for name in services:
        if name not in store:
            raise click.ClickException(f"no such service: {name}")
    services = list(services) or store.names()

    aggregator = LogAggregator(os.path.join(store.base_dir, ctx.obj['settings'].state_dir, "logs"))
    width = max(len(name) for name in services) if services else 0
    for name, line in aggregator.read(services, tail):
        click.echo(f"{name:{width}} | {line}")
    if follow:
        try:
            for name, line in aggregator.follow(services):
                click.echo(f"{name:{width}} | {line}")
        except KeyboardInterrupt:
            click.echo("\nStopping log tailing...")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
