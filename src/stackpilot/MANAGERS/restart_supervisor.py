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
Restart policy enforcement: relaunches exited instances according to
their service's policy, with exponential backoff for on-failure.
"""
import asyncio
import copy
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from ..MODELS.errors import LaunchError
from ..MODELS.runtime_instance import InstanceState, RuntimeInstance
from ..MODELS.service_definition import RestartPolicy, RestartPolicyCondition
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class InstanceExit(Exception):
    """An instance's process ended, or never started."""

    def __init__(self, instance: RuntimeInstance, exit_code: Optional[int], error: Optional[str] = None,
                 ran_for: Optional[float] = None):
        self.instance = instance
        self.exit_code = exit_code
        self.error = error
        self.ran_for = ran_for
        super().__init__(error or f"{instance.instance_id} exited with code {exit_code}")

    @property
    def failed(self) -> bool:
        return self.error is not None or self.exit_code != 0


def should_restart(policy: RestartPolicy, exited: InstanceExit) -> bool:
    """
    Decides whether an exited instance is relaunched.

    An operator-initiated stop is never undone, whatever the policy.
    """
    if exited.instance.operator_stopped:
        return False
    if policy.condition == RestartPolicyCondition.NEVER:
        return False
    if policy.condition in (RestartPolicyCondition.ALWAYS, RestartPolicyCondition.UNLESS_STOPPED):
        return True
    if policy.condition == RestartPolicyCondition.ON_FAILURE:
        return exited.failed
    return False


class RestartSupervisor:
    """
    Owns one replica slot from its first launch until it stops for good.

    Each exit is fed to tenacity: the retry predicate is the restart
    policy, the wait is the backoff. Restart counts are kept per service.
    """

    def __init__(self,
                 runtime: ContainerRuntime,
                 launcher: Callable[[RuntimeInstance], Awaitable[None]],
                 settings: Optional[OrchestratorSettings] = None,
                 on_change: Optional[Callable[[RuntimeInstance], None]] = None,
                 on_replace: Optional[Callable[[RuntimeInstance, RuntimeInstance], None]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        :param runtime: Runtime used to wait for instance exits.
        :param launcher: Binds and launches an instance; raises on failure.
        :param on_change: Called after every state change of a supervised instance.
        :param on_replace: Called with (old, new) before a relaunch.
        :param sleep: Backoff sleep, replaceable in tests.
        """
        self.runtime = runtime
        self.launcher = launcher
        self.settings = settings or OrchestratorSettings()
        self.on_change = on_change
        self.on_replace = on_replace
        self.sleep = sleep
        self.restart_counts: Dict[str, int] = defaultdict(int)

    async def supervise(self, instance: RuntimeInstance) -> RuntimeInstance:
        """
        Launches the instance and keeps its replica slot alive per the restart policy.

        :return: The last instance of the slot, once no further restart is due.
        :raises StackpilotError: For errors other than exits, such as BindError.
        """
        policy = instance.descriptor.restart_policy
        current = instance
        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, InstanceExit) and should_restart(policy, e)
            ),
            stop=self._stop_for(policy),
            wait=self._wait_for(policy),
            sleep=self.sleep,
            before_sleep=self._log_restart,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        current = self._replace(current)
                    await self._run_once(current)
        except InstanceExit as final:
            if final.failed and not final.instance.operator_stopped:
                logger.warning("[%s] %s; not restarting (policy %s)",
                               current.instance_id, final, policy.condition.value)
        return current

    async def _run_once(self, instance: RuntimeInstance) -> None:
        try:
            await self.launcher(instance)
        except LaunchError as e:
            instance.state = InstanceState.FAILED
            self._notify(instance)
            raise InstanceExit(instance, None, str(e)) from e

        loop = asyncio.get_running_loop()
        started = loop.time()
        exit_code = await self.runtime.wait(instance)
        ran_for = loop.time() - started
        instance.exit_code = exit_code
        if exit_code == 0 or instance.operator_stopped:
            instance.state = InstanceState.STOPPED
        else:
            instance.state = InstanceState.FAILED
        self._notify(instance)
        raise InstanceExit(instance, exit_code, ran_for=ran_for)

    def _replace(self, old: RuntimeInstance) -> RuntimeInstance:
        new = old.replacement()
        self.restart_counts[old.service] += 1
        if self.on_replace:
            self.on_replace(old, new)
        logger.info("Restarting %s as %s (restart %d)", old.instance_id, new.instance_id, new.restart_count)
        return new

    def _notify(self, instance: RuntimeInstance) -> None:
        if self.on_change:
            self.on_change(instance)

    def _stop_for(self, policy: RestartPolicy):
        if policy.condition == RestartPolicyCondition.ON_FAILURE and policy.max_retries is not None:
            return stop_after_attempt(policy.max_retries + 1)
        return stop_never

    def _wait_for(self, policy: RestartPolicy):
        """
        on-failure backs off exponentially from the base delay up to the cap.
        always and unless-stopped relaunch immediately after an exit, but a
        launch that fails outright still backs off.

        The exponent counts consecutive short runs only. A run that lasted
        ``restart_reset_after`` seconds or more starts again from the base delay.
        """
        backoff = wait_exponential(
            multiplier=policy.delay or self.settings.restart_delay,
            min=policy.delay or self.settings.restart_delay,
            max=policy.max_delay or self.settings.restart_max_delay,
        )
        short_runs = 0

        def wait(retry_state: RetryCallState) -> float:
            nonlocal short_runs
            exited = retry_state.outcome.exception()
            if isinstance(exited, InstanceExit) and exited.ran_for is not None \
                    and exited.ran_for >= self.settings.restart_reset_after:
                short_runs = 0
            short_runs += 1
            if policy.condition == RestartPolicyCondition.ON_FAILURE or \
                    (isinstance(exited, InstanceExit) and exited.error is not None):
                streak = copy.copy(retry_state)
                streak.attempt_number = short_runs
                return backoff(streak)
            return 0.0

        return wait

    def _log_restart(self, retry_state: RetryCallState) -> None:
        exited = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info("[%s] %s; restarting in %.1fs", exited.instance.instance_id, exited, delay)
