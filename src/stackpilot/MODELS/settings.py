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
Orchestrator-wide settings.
"""
import os
from typing import Dict, Mapping, Optional
from pydantic import BaseModel, Field

ENV_PREFIX = "STACKPILOT_"


class OrchestratorSettings(BaseModel):
    """
    Tunables that are not part of the topology itself.

    :param dependency_timeout: Seconds a service waits for its dependencies.
    :param restart_delay: First on-failure backoff when the policy gives none.
    :param restart_max_delay: Cap for on-failure backoff.
    :param restart_reset_after: Seconds an instance must run for the backoff to start over.
    :param stop_timeout: Seconds between SIGTERM and SIGKILL.
    :param state_dir: Directory (relative to the project) for volumes and logs.
    """
    dependency_timeout: float = Field(default=120.0, gt=0)
    restart_delay: float = Field(default=1.0, gt=0)
    restart_max_delay: float = Field(default=300.0, gt=0)
    restart_reset_after: float = Field(default=10.0, gt=0)
    stop_timeout: float = Field(default=10.0, ge=0)
    state_dir: str = ".stackpilot"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "OrchestratorSettings":
        """
        Builds settings from ``STACKPILOT_*`` variables, then applies overrides.
        Overrides set to None are ignored so CLI defaults do not mask the environment.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, str] = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
