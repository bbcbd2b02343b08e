"""One in-flight call per logical request slot; a new call supersedes the old one."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")


class Superseded(asyncio.CancelledError):
    """Raised into a caller whose call was replaced by a newer one on the same slot."""


class RequestSlot:
    def __init__(self, name: str) -> None:
        self.name = name
        self._task: asyncio.Task[Any] | None = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def cancel(self) -> None:
        """Cancel the in-flight call, if any, and wait for it to unwind."""
        self._generation += 1
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            # The superseded call's own failure is irrelevant now.
            pass

    async def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` as the slot's only in-flight call.

        Any earlier call is cancelled first. If this call is itself superseded
        while awaiting, :class:`Superseded` is raised to its caller so a stale
        result can never be applied.
        """
        await self.cancel()
        generation = self._generation
        task: asyncio.Task[T] = asyncio.create_task(coro, name=f"slot-{self.name}-{generation}")
        self._task = task
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if not self.is_current(generation):
                raise Superseded(f"{self.name} call superseded") from None
            # The caller itself was cancelled: take the in-flight call down with it.
            task.cancel()
            raise
        finally:
            if self._task is task and task.done():
                self._task = None
        if not self.is_current(generation):
            raise Superseded(f"{self.name} call superseded")
        return result
