"""Engagement change notifications.

Observers subscribe to state changes for a (user, challenge) pair.
``publish()`` is synchronous and never blocks the caller: plain callbacks
run inline, coroutine callbacks are scheduled with ``loop.create_task()``.
A failing observer is logged and never affects the mutation that fired it.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from engagement.shared.schemas.base import ChangeKind, SyncState
from engagement.shared.utils.datetime_utils import utcnow
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EngagementEvent:
    """A committed change to one engagement."""

    username: str
    challenge_id: str
    kind: ChangeKind
    sync_state: SyncState = SyncState.SYNCED
    operation_id: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)


Observer = Callable[[EngagementEvent], Union[None, Awaitable[None]]]


class ChangeNotifier:
    """Publish/subscribe hub for engagement events."""

    def __init__(self) -> None:
        self._observers: list[Observer] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer.

        Returns:
            A function that removes the observer again
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def publish(self, event: EngagementEvent) -> None:
        """Deliver ``event`` to every observer."""
        for observer in list(self._observers):
            try:
                result = observer(event)
            except Exception as e:
                logger.warning(
                    "observer_failed",
                    observer=getattr(observer, "__name__", repr(observer)),
                    kind=event.kind.value,
                    error_type=type(e).__name__,
                )
                continue

            if inspect.isawaitable(result):
                self._schedule(result, event)

    def _schedule(self, awaitable: Awaitable[None], event: EngagementEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("observer_skipped_no_loop", kind=event.kind.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run(awaitable, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, awaitable: Awaitable[None], event: EngagementEvent) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.warning(
                "observer_failed",
                kind=event.kind.value,
                username=event.username,
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for scheduled async observers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


__all__ = ["ChangeNotifier", "EngagementEvent", "Observer"]
