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
Parsers for compose YAML files.

The parser is forgiving in the sense that it keeps going after a bad entry:
every problem found in every service is collected, and a single
ValidationError listing all of them is raised at the end.
"""
import logging
import os
import shlex
from typing import Dict, Any, List, Mapping, Optional, Tuple

import pydantic
import yaml

from ..MODELS.errors import ValidationError
from ..MODELS.orchestration_config import (
    DEFAULT_NETWORK,
    NetworkDeclaration,
    OrchestrationConfig,
    VolumeDeclaration,
)
from ..MODELS.service_definition import (
    Dependency,
    DependencyCondition,
    HealthCheck,
    PortBinding,
    ProbeKind,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError
from .env_parser import EnvParser

logger = logging.getLogger(__name__)

Problem = Tuple[Optional[str], str]

_DEPENDENCY_CONDITIONS = {
    "service_started": DependencyCondition.STARTED,
    "started": DependencyCondition.STARTED,
    "service_healthy": DependencyCondition.HEALTHY,
    "healthy": DependencyCondition.HEALTHY,
}

_DEPLOY_RESTART_CONDITIONS = {
    "none": RestartPolicyCondition.NEVER,
    "on-failure": RestartPolicyCondition.ON_FAILURE,
    "any": RestartPolicyCondition.ALWAYS,
}


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    Safe loader that records mapping keys declared more than once.
    The last occurrence still wins, like the stock loader.
    """

    def __init__(self, stream):
        super().__init__(stream)
        self.duplicates: List[Tuple[Any, int]] = []

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen = set()
            for key_node, _ in node.value:
                key = self.construct_object(key_node, deep=True)
                try:
                    is_dup = key in seen
                except TypeError:
                    continue
                if is_dup:
                    self.duplicates.append((key, key_node.start_mark.line + 1))
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


class ComposeParser:
    """
    Parser for compose files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation. Defaults to the process
            environment layered over the project's ``.env`` file.
        """
        self.context = dict(context) if context is not None else None
        self.problems: List[Problem] = []

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        :raises ValidationError: If the file is malformed.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(compose_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: str = ".") -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths are resolved against.
        :return: Parsed configuration.
        :raises ValidationError: If the document is malformed.
        """
        data = self.load_document(content)
        config = self.build_config(data, base_dir=base_dir)
        if self.problems:
            raise ValidationError(self.problems)
        return config

    def load_document(self, content: str) -> Dict[str, Any]:
        """
        Decodes YAML, rejecting duplicate keys.

        :raises ValidationError: If the YAML is unreadable or repeats a key.
        """
        loader = None
        try:
            # the reader rejects control characters while being constructed
            loader = _UniqueKeyLoader(content)
            data = loader.get_single_data()
        except yaml.YAMLError as e:
            raise ValidationError([(None, f"invalid YAML: {e}")]) from e
        finally:
            if loader is not None:
                loader.dispose()

        if loader.duplicates:
            problems: List[Problem] = []
            services = data.get('services') if isinstance(data, dict) else None
            for key, line in loader.duplicates:
                if isinstance(services, dict) and key in services:
                    problems.append((str(key), f"declared more than once (line {line})"))
                else:
                    problems.append((None, f"duplicate key {key!r} (line {line})"))
            raise ValidationError(problems)

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError([(None, "top level of a compose file must be a mapping")])
        return data

    def build_config(self, data: Mapping[str, Any], base_dir: str = ".") -> OrchestrationConfig:
        """
        Converts a decoded compose document into an OrchestrationConfig.

        Problems are appended to ``self.problems``; services that cannot be
        built at all are left out of the result.
        """
        context = self._resolve_context(base_dir)
        try:
            data = EnvironmentInterpolator.interpolate_tree(dict(data), context)
        except InterpolationError as e:
            raise ValidationError([(None, str(e))]) from e

        services: Dict[str, ServiceDefinition] = {}
        raw_services = data.get('services') or {}
        if not isinstance(raw_services, dict):
            self.problems.append((None, "'services' must be a mapping"))
            raw_services = {}
        for name, spec in raw_services.items():
            service = self._parse_service(str(name), spec, context, base_dir)
            if service is not None:
                services[service.name] = service

        return OrchestrationConfig(
            services=services,
            networks=self._parse_networks(data.get('networks')),
            volumes=self._parse_volumes(data.get('volumes')),
            base_dir=base_dir,
        )

    def _resolve_context(self, base_dir: str) -> Dict[str, str]:
        if self.context is not None:
            return self.context
        context: Dict[str, str] = {}
        dotenv_path = os.path.join(base_dir, ".env")
        if os.path.isfile(dotenv_path):
            context.update(EnvParser.parse(dotenv_path))
        context.update(os.environ)
        self.context = context
        return context

    def _parse_networks(self, spec: Any) -> Dict[str, NetworkDeclaration]:
        networks = {DEFAULT_NETWORK: NetworkDeclaration(name=DEFAULT_NETWORK)}
        if spec is None:
            return networks
        if not isinstance(spec, dict):
            self.problems.append((None, "'networks' must be a mapping"))
            return networks
        for name, options in spec.items():
            options = options or {}
            if not isinstance(options, dict):
                self.problems.append((None, f"network {name}: options must be a mapping"))
                continue
            driver = options.get('driver', 'bridge')
            if driver != 'bridge':
                self.problems.append((None, f"network {name}: unsupported driver {driver!r}, only bridge is supported"))
                continue
            subnet = None
            ipam = options.get('ipam') or {}
            ipam_config = ipam.get('config') if isinstance(ipam, dict) else None
            if isinstance(ipam_config, list) and ipam_config and isinstance(ipam_config[0], dict):
                subnet = ipam_config[0].get('subnet')
            try:
                networks[str(name)] = NetworkDeclaration(name=str(name), driver=driver, subnet=subnet)
            except pydantic.ValidationError as e:
                self.problems.append((None, f"network {name}: {e.errors()[0]['msg']}"))
        return networks

    def _parse_volumes(self, spec: Any) -> Dict[str, VolumeDeclaration]:
        volumes: Dict[str, VolumeDeclaration] = {}
        if spec is None:
            return volumes
        if not isinstance(spec, dict):
            self.problems.append((None, "'volumes' must be a mapping"))
            return volumes
        for name, options in spec.items():
            options = options or {}
            if not isinstance(options, dict):
                self.problems.append((None, f"volume {name}: options must be a mapping"))
                continue
            try:
                volumes[str(name)] = VolumeDeclaration(
                    name=str(name),
                    driver=options.get('driver', 'local'),
                    external=bool(options.get('external', False)),
                )
            except pydantic.ValidationError as e:
                self.problems.append((None, f"volume {name}: {e.errors()[0]['msg']}"))
        return volumes

    def _parse_service(self, name: str, spec: Any, context: Mapping[str, str],
                       base_dir: str) -> Optional[ServiceDefinition]:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance, or None if it could not be built.
        """
        if not isinstance(spec, dict):
            self.problems.append((name, "definition must be a mapping"))
            return None
        before = len(self.problems)

        def guard(parser, value, default):
            try:
                return parser(value)
            except (ValueError, TypeError) as e:
                self.problems.append((name, str(e)))
                return default

        image = spec.get('image')
        if image is None and spec.get('build') is None:
            self.problems.append((name, "has neither an image nor a build context"))
        deploy = spec.get('deploy') or {}
        if not isinstance(deploy, dict):
            self.problems.append((name, "deploy must be a mapping"))
            deploy = {}

        fields = dict(
            name=name,
            image=str(image) if image is not None else "",
            command=guard(self._to_argv, spec.get('command'), []),
            entrypoint=guard(self._to_argv, spec.get('entrypoint'), []),
            working_dir=spec.get('working_dir'),
            environment=guard(lambda v: self._parse_environment(v, context), spec.get('environment'), {}),
            environment_files=guard(lambda v: self._parse_env_files(v, base_dir), spec.get('env_file'), []),
            ports=guard(self._parse_ports, spec.get('ports'), []),
            networks=guard(self._parse_service_networks, spec.get('networks'), [DEFAULT_NETWORK]),
            volumes=guard(self._parse_mounts, spec.get('volumes'), []),
            restart_policy=guard(
                lambda v: self._parse_restart(v, deploy.get('restart_policy')),
                spec.get('restart'), RestartPolicy(),
            ),
            health_check=guard(self._parse_healthcheck, spec.get('healthcheck'), None),
            depends_on=guard(self._parse_depends_on, spec.get('depends_on'), []),
            replicas=guard(lambda v: self._parse_replicas(v, spec.get('scale')), deploy.get('replicas'), 1),
            labels=guard(self._parse_labels, spec.get('labels'), {}),
        )
        if len(self.problems) > before:
            return None

        try:
            return ServiceDefinition(**fields)
        except pydantic.ValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error['loc'])
                self.problems.append((name, f"{location}: {error['msg']}"))
            return None

    def _to_argv(self, val: Any) -> List[str]:
        """
        Helper to turn a command into an argv list. Strings are split shell-style.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        if isinstance(val, list):
            return [str(item) for item in val]
        raise ValueError(f"command must be a string or a list, not {type(val).__name__}")

    def _parse_environment(self, spec: Any, context: Mapping[str, str]) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if spec is None:
            return environment
        if isinstance(spec, list):
            items = []
            for entry in spec:
                if not isinstance(entry, str):
                    raise ValueError(f"malformed environment entry {entry!r}")
                if '=' in entry:
                    items.append(tuple(entry.split('=', 1)))
                else:
                    items.append((entry, None))
            names = [key for key, _ in items]
            repeated = [key for key in dict.fromkeys(names) if names.count(key) > 1]
            if repeated:
                raise ValueError(f"duplicate environment variable {repeated[0]!r}")
        elif isinstance(spec, dict):
            items = list(spec.items())
        else:
            raise ValueError("environment must be a list or a mapping")

        for key, value in items:
            key = str(key)
            if not key or any(c.isspace() for c in key) or '=' in key:
                raise ValueError(f"malformed environment variable name {key!r}")
            if value is None:
                # passed through from the host when set there
                if key in context:
                    environment[key] = context[key]
                continue
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise ValueError(f"environment variable {key} must be a string or number, not {value!r}")
            environment[key] = str(value)
        return environment

    def _parse_env_files(self, spec: Any, base_dir: str) -> List[str]:
        if spec is None:
            return []
        entries = [spec] if isinstance(spec, (str, dict)) else spec
        if not isinstance(entries, list):
            raise ValueError("env_file must be a string or a list")
        files = []
        for entry in entries:
            if isinstance(entry, dict):
                path = entry.get('path')
                if not path:
                    raise ValueError("env_file entry is missing a path")
                if entry.get('required', True) is False and \
                        not os.path.exists(os.path.join(base_dir, path)):
                    continue
                files.append(str(path))
            else:
                files.append(str(entry))
        return files

    def _parse_ports(self, spec: Any) -> List[PortBinding]:
        if spec is None:
            return []
        if not isinstance(spec, list):
            raise ValueError("ports must be a list")
        bindings: List[PortBinding] = []
        for entry in spec:
            if isinstance(entry, dict):
                if 'target' not in entry:
                    raise ValueError(f"malformed port entry {entry!r}: missing target")
                published = entry.get('published')
                bindings.append(PortBinding(
                    container=self._port_number(entry['target'], entry),
                    host=self._port_number(published, entry) if published not in (None, "") else None,
                    protocol=entry.get('protocol', 'tcp'),
                    host_ip=entry.get('host_ip'),
                ))
            elif isinstance(entry, (str, int)) and not isinstance(entry, bool):
                bindings.extend(self._parse_port_string(str(entry)))
            else:
                raise ValueError(f"malformed port entry {entry!r}")
        return bindings

    def _parse_port_string(self, entry: str) -> List[PortBinding]:
        text, _, protocol = entry.partition('/')
        protocol = protocol or 'tcp'
        parts = text.split(':')
        host_ip = None
        if len(parts) == 1:
            host_part, container_part = "", parts[0]
        elif len(parts) == 2:
            host_part, container_part = parts
        elif len(parts) == 3:
            host_ip, host_part, container_part = parts
        else:
            raise ValueError(f"malformed port entry {entry!r}")

        containers = self._port_range(container_part, entry)
        hosts: List[Optional[int]] = [None] * len(containers)
        if host_part:
            hosts = self._port_range(host_part, entry)
            if len(hosts) != len(containers):
                raise ValueError(f"malformed port entry {entry!r}: host and container ranges differ in size")
        try:
            return [
                PortBinding(container=c, host=h, protocol=protocol, host_ip=host_ip or None)
                for h, c in zip(hosts, containers)
            ]
        except pydantic.ValidationError as e:
            raise ValueError(f"malformed port entry {entry!r}") from e

    def _port_range(self, text: str, entry: Any) -> List[int]:
        start, sep, end = text.partition('-')
        first = self._port_number(start, entry)
        if not sep:
            return [first]
        last = self._port_number(end, entry)
        if last < first:
            raise ValueError(f"malformed port entry {entry!r}: empty range")
        return list(range(first, last + 1))

    def _port_number(self, value: Any, entry: Any) -> int:
        try:
            number = int(str(value).strip())
        except ValueError:
            raise ValueError(f"malformed port entry {entry!r}") from None
        if not 1 <= number <= 65535:
            raise ValueError(f"malformed port entry {entry!r}: port {number} out of range")
        return number

    def _parse_service_networks(self, spec: Any) -> List[str]:
        if spec is None:
            return [DEFAULT_NETWORK]
        if isinstance(spec, dict):
            names = [str(key) for key in spec]
        elif isinstance(spec, list):
            names = [str(item) for item in spec]
        else:
            raise ValueError("networks must be a list or a mapping")
        return list(dict.fromkeys(names))

    def _parse_mounts(self, spec: Any) -> List[VolumeMount]:
        if spec is None:
            return []
        if not isinstance(spec, list):
            raise ValueError("volumes must be a list")
        mounts = []
        for v in spec:
            if isinstance(v, str):
                parts = v.split(':')
                if len(parts) == 1:
                    raise ValueError(f"anonymous volume {v!r} is not supported, name it")
                if len(parts) > 3 or not parts[0] or not parts[1]:
                    raise ValueError(f"malformed volume entry {v!r}")
                mode = parts[2].split(',') if len(parts) == 3 else []
                mounts.append(VolumeMount(source=parts[0], target=parts[1], read_only='ro' in mode))
            elif isinstance(v, dict):
                if not v.get('source') or not v.get('target'):
                    raise ValueError(f"malformed volume entry {v!r}")
                mounts.append(VolumeMount(
                    source=str(v['source']),
                    target=str(v['target']),
                    read_only=bool(v.get('read_only', False)),
                ))
            else:
                raise ValueError(f"malformed volume entry {v!r}")
        return mounts

    def _parse_restart(self, restart: Any, deploy_policy: Any) -> RestartPolicy:
        if restart is None and isinstance(deploy_policy, dict):
            condition = deploy_policy.get('condition', 'any')
            if condition not in _DEPLOY_RESTART_CONDITIONS:
                raise ValueError(f"unknown deploy restart condition {condition!r}")
            delay = None
            if deploy_policy.get('delay') is not None:
                delay = parse_duration(deploy_policy['delay']) or None
            return RestartPolicy(
                condition=_DEPLOY_RESTART_CONDITIONS[condition],
                max_retries=deploy_policy.get('max_attempts'),
                delay=delay,
            )
        if restart is None or restart is False:
            return RestartPolicy()

        text = str(restart)
        condition, _, count = text.partition(':')
        if condition not in ('no', 'never', 'always', 'unless-stopped', 'on-failure'):
            raise ValueError(f"unknown restart policy {text!r}")
        if count and condition != 'on-failure':
            raise ValueError(f"restart policy {condition} does not take a retry count")
        max_retries = None
        if count:
            if not count.isdigit():
                raise ValueError(f"malformed restart policy {text!r}")
            max_retries = int(count)
        return RestartPolicy(condition=condition, max_retries=max_retries)

    def _parse_healthcheck(self, spec: Any) -> Optional[HealthCheck]:
        if spec is None:
            return None
        if not isinstance(spec, dict):
            raise ValueError("healthcheck must be a mapping")
        if spec.get('disable'):
            return None
        test = spec.get('test')
        if test is None:
            logger.debug("healthcheck without a test; image defaults are not known here")
            return None

        if isinstance(test, str):
            kind, argv = ProbeKind.CMD_SHELL, [test]
        elif isinstance(test, list) and test:
            head, rest = str(test[0]), [str(t) for t in test[1:]]
            if head == 'NONE':
                return None
            if head == 'CMD':
                kind, argv = ProbeKind.CMD, rest
            elif head == 'CMD-SHELL':
                kind, argv = ProbeKind.CMD_SHELL, [" ".join(rest)]
            elif head == 'TCP':
                kind, argv = ProbeKind.TCP, rest
            elif head == 'HTTP':
                kind, argv = ProbeKind.HTTP, rest
            else:
                raise ValueError("healthcheck test must start with NONE, CMD, CMD-SHELL, TCP or HTTP")
            if not argv or not argv[0]:
                raise ValueError("healthcheck test is empty")
            if kind in (ProbeKind.TCP, ProbeKind.HTTP) and len(argv) != 1:
                raise ValueError(f"healthcheck {head} takes exactly one target")
        else:
            raise ValueError("healthcheck test must be a string or a non-empty list")

        options: Dict[str, Any] = {}
        for key in ('interval', 'timeout', 'start_period'):
            if spec.get(key) is not None:
                options[key] = parse_duration(spec[key])
        if spec.get('retries') is not None:
            options['retries'] = spec['retries']
        try:
            return HealthCheck(kind=kind, test=argv, **options)
        except pydantic.ValidationError as e:
            details = "; ".join(f"{err['loc'][0]}: {err['msg']}" for err in e.errors())
            raise ValueError(f"healthcheck {details}") from None

    def _parse_depends_on(self, spec: Any) -> List[Dependency]:
        if spec is None:
            return []
        if isinstance(spec, list):
            return [Dependency(service=str(name)) for name in dict.fromkeys(spec)]
        if not isinstance(spec, dict):
            raise ValueError("depends_on must be a list or a mapping")
        dependencies = []
        for target, options in spec.items():
            options = options or {}
            if not isinstance(options, dict):
                raise ValueError(f"depends_on options for {target} must be a mapping")
            condition = options.get('condition', 'service_started')
            if condition not in _DEPENDENCY_CONDITIONS:
                raise ValueError(f"unsupported depends_on condition {condition!r} for {target}")
            dependencies.append(Dependency(service=str(target), condition=_DEPENDENCY_CONDITIONS[condition]))
        return dependencies

    def _parse_replicas(self, replicas: Any, scale: Any) -> int:
        value = replicas if replicas is not None else scale
        if value is None:
            return 1
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"replicas must be a non-negative integer, not {value!r}")
        return value

    def _parse_labels(self, spec: Any) -> Dict[str, str]:
        if spec is None:
            return {}
        if isinstance(spec, dict):
            return {str(k): "" if v is None else str(v) for k, v in spec.items()}
        if isinstance(spec, list):
            labels = {}
            for entry in spec:
                key, _, value = str(entry).partition('=')
                labels[key] = value
            return labels
        raise ValueError("labels must be a list or a mapping")
