import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

SESSION_CHANGED = "session"
SET_COMPLETED = "session.set_completed"
PERSONAL_RECORD = "session.personal_record"
TIMER_CHANGED = "rest_timer"
TIMER_TICK = "rest_timer.tick"
TIMER_WARNING = "rest_timer.warning"
TIMER_COMPLETED = "rest_timer.completed"
COUNTER_CHANGED = "counter"
COUNTER_SYNC_FAILED = "counter.sync_failed"

ALL_TOPICS = "*"

Callback = Callable[[str, Any], None]


class EventBus:
    """Synchronous publish/subscribe hub used by the engine services.

    Callbacks receive ``(topic, payload)``. Subscribing to ``"*"`` receives
    every topic. A callback that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callback]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        self._subscribers.setdefault(topic, []).append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(topic, callback)

        return unsubscribe

    def unsubscribe(self, topic: str, callback: Callback) -> None:
        callbacks = self._subscribers.get(topic, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, topic: str, payload: Any = None) -> None:
        targets = list(self._subscribers.get(topic, []))
        targets += self._subscribers.get(ALL_TOPICS, [])
        for callback in targets:
            try:
                callback(topic, payload)
            except Exception:
                logger.exception("subscriber for %s failed", topic)
