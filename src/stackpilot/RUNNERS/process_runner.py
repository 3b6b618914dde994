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
Execution of instances as local processes with log redirection and lifecycle management.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import IO, Dict, List, Optional, Tuple

import psutil

from ..MANAGERS.binder import Binding
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.errors import LaunchError
from ..MODELS.runtime_instance import RuntimeInstance
from .container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 500


@dataclass
class ProcessHandle:
    process: asyncio.subprocess.Process
    log_handle: IO
    root: str
    env: Dict[str, str]
    cwd: str


class ProcessRuntime(ContainerRuntime):
    """
    Runs each instance's ``entrypoint + command`` as a native process.

    The image reference is not resolved; the command must be runnable on
    the host. Mounts are made visible as symlinks under a per-instance
    root directory, exported to the process as ``STACKPILOT_ROOT``.
    """

    def __init__(self, base_dir: str = ".", state_dir: str = ".stackpilot"):
        """
        :param base_dir: Project directory; relative paths resolve against it.
        :param state_dir: Directory (relative to base_dir) for logs and instance roots.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.join(self.base_dir, state_dir)
        self.volume_manager = VolumeManager(self.base_dir, os.path.join(state_dir, "volumes"))

    def log_path(self, instance: RuntimeInstance) -> str:
        return os.path.join(self.state_dir, "logs", f"{instance.instance_id}.log")

    async def launch(self, instance: RuntimeInstance, binding: Binding) -> None:
        command = instance.descriptor.full_command()
        if not command:
            raise LaunchError(
                f"[{instance.instance_id}] no command or entrypoint; "
                f"image {instance.descriptor.image or '<none>'} cannot be run as a process"
            )

        root = os.path.join(self.state_dir, "instances", instance.instance_id)
        os.makedirs(root, exist_ok=True)
        self.volume_manager.materialize(binding.mounts, root)

        cwd = self.base_dir
        if instance.descriptor.working_dir:
            cwd = self.volume_manager.resolve_target(instance.descriptor.working_dir, root)
            os.makedirs(cwd, exist_ok=True)

        env = os.environ.copy()
        env.update(binding.environment)
        env["STACKPILOT_ROOT"] = root
        env["STACKPILOT_INSTANCE"] = instance.instance_id

        log_file = self.log_path(instance)
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        log_handle = open(log_file, 'a')

        if instance.descriptor.ports:
            logger.debug("[%s] ports are not remapped for native processes", instance.instance_id)
        logger.info("[%s] Starting command: %s", instance.instance_id, ' '.join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                env=env,
                cwd=cwd,
                stdout=log_handle,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log_handle.close()
            raise LaunchError(f"[{instance.instance_id}] failed to start: {e}") from e

        instance.handle = ProcessHandle(process=process, log_handle=log_handle, root=root, env=env, cwd=cwd)

    async def wait(self, instance: RuntimeInstance) -> int:
        handle = self._handle(instance)
        try:
            return await handle.process.wait()
        finally:
            if handle.process.returncode is not None:
                handle.log_handle.close()

    async def stop(self, instance: RuntimeInstance, timeout: float = 10.0) -> None:
        """
        Stops the process by sending SIGTERM to it and its children,
        followed by SIGKILL if it doesn't stop. The log file is closed
        once the process is gone.
        """
        handle = instance.handle
        if handle is None:
            return
        try:
            if handle.process.returncode is None:
                await self._terminate(instance, handle, timeout)
        finally:
            if handle.process.returncode is not None:
                handle.log_handle.close()

    async def _terminate(self, instance: RuntimeInstance, handle: ProcessHandle, timeout: float) -> None:
        logger.info("[%s] Stopping process...", instance.instance_id)
        children = self._children(handle.process.pid)
        handle.process.terminate()
        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass
        try:
            await asyncio.wait_for(handle.process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] Process did not terminate, killing...", instance.instance_id)
            for child in children:
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass
            handle.process.kill()
            await handle.process.wait()

    async def exec(self, instance: RuntimeInstance, argv: List[str], timeout: float) -> Tuple[int, str]:
        handle = self._handle(instance)
        process = await asyncio.create_subprocess_exec(
            *argv,
            env=handle.env,
            cwd=handle.cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
        )
        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout)
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
        return process.returncode, output.decode(errors="replace")[:OUTPUT_LIMIT]

    def _handle(self, instance: RuntimeInstance) -> ProcessHandle:
        if instance.handle is None:
            raise LaunchError(f"[{instance.instance_id}] was never launched")
        return instance.handle

    @staticmethod
    def _children(pid: int) -> List[psutil.Process]:
        try:
            return psutil.Process(pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []
