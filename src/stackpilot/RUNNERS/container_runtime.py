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
The interface the orchestrator uses to run instances.

Process isolation, image resolution and the like belong to the runtime;
the orchestrator only launches, waits, stops and executes probes.
"""
from abc import ABC, abstractmethod
from typing import List, Tuple

from ..MANAGERS.binder import Binding
from ..MODELS.runtime_instance import RuntimeInstance


class ContainerRuntime(ABC):
    """
    Runs instances. Implementations keep whatever they need on ``instance.handle``.
    """

    @abstractmethod
    async def launch(self, instance: RuntimeInstance, binding: Binding) -> None:
        """
        Starts the instance and returns once its process is running.

        :raises LaunchError: If the instance cannot be started.
        """

    @abstractmethod
    async def wait(self, instance: RuntimeInstance) -> int:
        """Waits for the instance to exit and returns its exit code."""

    @abstractmethod
    async def stop(self, instance: RuntimeInstance, timeout: float = 10.0) -> None:
        """Asks the instance to terminate, killing it after ``timeout`` seconds."""

    @abstractmethod
    async def exec(self, instance: RuntimeInstance, argv: List[str], timeout: float) -> Tuple[int, str]:
        """
        Runs a command in the instance's context.

        :return: Exit code and (truncated) output.
        :raises asyncio.TimeoutError: If the command outlives ``timeout``.
        """
