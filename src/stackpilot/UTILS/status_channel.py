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
A single-value channel tasks can block on until the value satisfies a condition.
"""
import asyncio
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class StatusChannel(Generic[T]):
    """
    Holds the latest published value. Publishing is synchronous and wakes
    every waiter, which then re-evaluates its own predicate.

    Not thread-safe: publish and wait from the same event loop.
    """

    def __init__(self, value: T):
        self._value = value
        self._changed: Optional[asyncio.Event] = None

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        if self._changed is not None:
            self._changed.set()
            self._changed = None

    async def wait_for(self, predicate: Callable[[T], bool], timeout: Optional[float] = None) -> T:
        """
        Suspends until ``predicate(value)`` is true and returns that value.
        Exceptions raised by the predicate propagate to the waiter.

        :raises asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        return await asyncio.wait_for(self._wait(predicate), timeout)

    async def _wait(self, predicate: Callable[[T], bool]) -> T:
        while not predicate(self._value):
            if self._changed is None:
                self._changed = asyncio.Event()
            await self._changed.wait()
        return self._value
