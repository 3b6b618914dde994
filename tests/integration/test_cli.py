import sys

import pytest
import yaml
from click.testing import CliRunner

from stackpilot.CLI.main import cli

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


def write_compose(tmp_path, services, **extra):
    path = tmp_path / "compose.yaml"
    path.write_text(yaml.safe_dump(dict(services=services, **extra), sort_keys=False))
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def topology(tmp_path):
    return write_compose(tmp_path, {
        "web": {"image": "web:1", "command": SLEEPER, "depends_on": ["db"]},
        "db": {"image": "postgres:16", "command": SLEEPER, "ports": ["5432"]},
    })


def test_cli_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'dependency order' in result.output
    for command in ('config', 'plan', 'up', 'logs'):
        assert command in result.output


def test_cli_missing_file(runner, tmp_path):
    missing = str(tmp_path / 'non_existent.yml')
    result = runner.invoke(cli, ['-f', missing, 'up'])
    assert result.exit_code == 1
    assert f'{missing} not found.' in result.output


def test_cli_invalid_topology_lists_problems(runner, tmp_path):
    path = write_compose(tmp_path, {
        "a": {"image": "x", "ports": ["nope"]},
        "b": {"image": "x", "restart": "sometimes"},
    })
    result = runner.invoke(cli, ['-f', path, 'config'])
    assert result.exit_code == 1
    assert "service 'a'" in result.output
    assert "service 'b'" in result.output


def test_cli_cycle_is_reported(runner, tmp_path):
    path = write_compose(tmp_path, {
        "a": {"image": "x", "depends_on": ["b"]},
        "b": {"image": "x", "depends_on": ["a"]},
    })
    result = runner.invoke(cli, ['-f', path, 'plan'])
    assert result.exit_code == 1
    assert 'circular dependency' in result.output


def test_cli_config_prints_resolved_services(runner, topology):
    result = runner.invoke(cli, ['-f', topology, 'config'])
    assert result.exit_code == 0, result.output
    document = yaml.safe_load(result.output)
    assert list(document['services']) == ['web', 'db']
    assert document['services']['web']['depends_on'] == [{'service': 'db', 'condition': 'started'}]
    assert document['services']['db']['ports'][0]['container'] == 5432
    assert 'default' in document['networks']


def test_cli_plan_shows_startup_order(runner, topology):
    result = runner.invoke(cli, ['-f', topology, 'plan'])
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0].strip() == '1. db'
    assert lines[1].strip() == '2. web  (after db: started)'


def test_cli_up_starts_and_stops(runner, topology):
    result = runner.invoke(cli, ['-f', topology, 'up', '--exit-after-start'])
    assert result.exit_code == 0, result.output
    assert 'SERVICE' in result.output
    table = [line.split() for line in result.output.splitlines() if line.startswith(('db ', 'web '))]
    # first table after startup, second after shutdown
    assert table[:2] == [['db', 'running', 'none', '0'], ['web', 'running', 'none', '0']]
    assert table[2:] == [['db', 'stopped', 'none', '0'], ['web', 'stopped', 'none', '0']]


def test_cli_up_reports_services_that_did_not_start(runner, tmp_path):
    path = write_compose(tmp_path, {
        "broken": {"image": "x", "command": [str(tmp_path / "missing-binary")]},
        "app": {"image": "x", "command": SLEEPER, "depends_on": ["broken"]},
    })
    result = runner.invoke(cli, ['-f', path, 'up', '--exit-after-start'])
    assert result.exit_code == 1
    assert 'failed' in result.output
    assert 'not started' in result.output
    assert 'dependency broken is failed' in result.output


def test_cli_logs(runner, topology, tmp_path):
    logs = tmp_path / '.stackpilot' / 'logs'
    logs.mkdir(parents=True)
    (logs / 'db-1-1.log').write_text('listening\nready\n')
    (logs / 'web-1-2.log').write_text('serving\n')

    result = runner.invoke(cli, ['-f', topology, 'logs', 'db', '--tail', '1'])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ['db | ready']

    result = runner.invoke(cli, ['-f', topology, 'logs'])
    assert 'web | serving' in result.output
    assert 'db  | listening' in result.output


def test_cli_logs_unknown_service(runner, topology):
    result = runner.invoke(cli, ['-f', topology, 'logs', 'cache'])
    assert result.exit_code == 1
    assert 'no such service: cache' in result.output
