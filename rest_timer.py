from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from events import (
    EventBus,
    TIMER_CHANGED,
    TIMER_COMPLETED,
    TIMER_TICK,
    TIMER_WARNING,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Inactive:
    pass


@dataclass(frozen=True)
class Active:
    remaining: int
    total: int


@dataclass(frozen=True)
class Paused:
    remaining: int
    total: int


@dataclass(frozen=True)
class Completed:
    pass


RestTimerState = Union[Inactive, Active, Paused, Completed]


def describe(state: RestTimerState) -> dict:
    """Return a plain dictionary view of ``state``."""
    data = {"state": type(state).__name__.lower(), "remaining": 0, "total": 0}
    if isinstance(state, (Active, Paused)):
        data["remaining"] = state.remaining
        data["total"] = state.total
    return data


class RestTimer:
    """Countdown between sets with pause, resume and reset.

    With ``auto_tick`` enabled, ``start`` and ``resume`` must be called from a
    running event loop; a background task then calls :meth:`tick` every
    ``tick_interval`` seconds. Without it the owner drives :meth:`tick`.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        tick_interval: float = 1.0,
        warning_ticks: int = 3,
        auto_tick: bool = True,
    ) -> None:
        self.bus = bus or EventBus()
        self.tick_interval = tick_interval
        self.warning_ticks = warning_ticks
        self.auto_tick = auto_tick
        self._state: RestTimerState = Inactive()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RestTimerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, Active)

    @property
    def is_paused(self) -> bool:
        return isinstance(self._state, Paused)

    @property
    def is_ticking(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, duration_seconds: int) -> None:
        self._stop_ticking()
        duration = int(duration_seconds)
        if duration <= 0:
            self._set_state(Completed())
            self.bus.publish(TIMER_COMPLETED, None)
            return
        self._set_state(Active(remaining=duration, total=duration))
        self._start_ticking()

    def pause(self) -> None:
        if not isinstance(self._state, Active):
            return
        self._stop_ticking()
        self._set_state(Paused(self._state.remaining, self._state.total))

    def resume(self) -> None:
        if not isinstance(self._state, Paused):
            return
        self._set_state(Active(self._state.remaining, self._state.total))
        self._start_ticking()

    def pause_resume(self) -> None:
        if isinstance(self._state, Active):
            self.pause()
        elif isinstance(self._state, Paused):
            self.resume()

    def stop(self) -> None:
        self._stop_ticking()
        if not isinstance(self._state, Inactive):
            self._set_state(Inactive())

    def reset(self) -> None:
        self.stop()

    def tick(self) -> None:
        """Advance the countdown by one second."""
        if not isinstance(self._state, Active):
            return
        remaining = self._state.remaining - 1
        total = self._state.total
        self.bus.publish(TIMER_TICK, remaining)
        if remaining <= 0:
            self._stop_ticking()
            self._set_state(Completed())
            self.bus.publish(TIMER_COMPLETED, None)
            return
        if remaining <= self.warning_ticks:
            self.bus.publish(TIMER_WARNING, remaining)
        self._set_state(Active(remaining, total))

    def _set_state(self, state: RestTimerState) -> None:
        logger.debug("rest timer %s -> %s", self._state, state)
        self._state = state
        self.bus.publish(TIMER_CHANGED, state)

    def _start_ticking(self) -> None:
        if not self.auto_tick:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    def _stop_ticking(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self) -> None:
        while isinstance(self._state, Active):
            await asyncio.sleep(self.tick_interval)
            self.tick()
