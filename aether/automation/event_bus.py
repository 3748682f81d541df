# aether/automation/event_bus.py
from __future__ import annotations

import inspect
import logging
from collections import deque
from itertools import islice
from typing import Any, Deque, Dict, List, Optional

from .types import Event, EventHandler, Listener, new_id

log = logging.getLogger("automation.bus")


class EventBus:
    """
    Внутренняя шина событий.

      - подписчики сортируются по priority (больше → раньше),
        при равном priority в порядке подписки;
      - once-подписчик снимается сразу при первом вызове,
        чем бы вызов ни закончился;
      - ошибка одного обработчика не мешает остальным;
      - последние события лежат в истории (новые в начале).
    """

    def __init__(self, history_limit: int = 1000) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._history: Deque[Event] = deque(maxlen=max(1, int(history_limit)))
        self._stats = {
            "events_emitted": 0,
            "events_processed": 0,
            "errors": 0,
        }

    # ------------------------------------------------------------------ #
    # ПОДПИСКА
    # ------------------------------------------------------------------ #
    def subscribe(
        self,
        pattern: str,
        handler: EventHandler,
        *,
        priority: int = 0,
        once: bool = False,
        listener_id: Optional[str] = None,
    ) -> str:
        listener = Listener(
            id=listener_id or new_id(),
            pattern=pattern,
            handler=handler,
            priority=int(priority),
            once=once,
        )
        bucket = self._listeners.setdefault(pattern, [])
        bucket.append(listener)
        # sort стабильный → при равном priority остаётся порядок подписки
        bucket.sort(key=lambda lst: -lst.priority)

        log.debug(
            "subscribe %s -> %s (priority=%s once=%s)",
            pattern, listener.id, listener.priority, once,
        )
        return listener.id

    def once(self, pattern: str, handler: EventHandler, *, priority: int = 0) -> str:
        return self.subscribe(pattern, handler, priority=priority, once=True)

    def unsubscribe(self, pattern: str, listener_id: str) -> bool:
        bucket = self._listeners.get(pattern)
        if not bucket:
            return False

        for i, listener in enumerate(bucket):
            if listener.id == listener_id:
                del bucket[i]
                if not bucket:
                    del self._listeners[pattern]
                return True
        return False

    def clear(self) -> None:
        self._listeners.clear()

    # ------------------------------------------------------------------ #
    # ПУБЛИКАЦИЯ
    # ------------------------------------------------------------------ #
    async def publish(self, name: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """
        Отдать событие всем подписчикам на name, строго по очереди.
        Возвращается, только когда отработали все обработчики.
        """
        self._stats["events_emitted"] += 1

        event = Event(name=name, data=data if data is not None else {})
        self._history.appendleft(event)

        # снимок: подписки/отписки во время рассылки на неё не влияют
        listeners = list(self._listeners.get(name, ()))

        for listener in listeners:
            if listener.once:
                self.unsubscribe(name, listener.id)
            try:
                result = listener.handler(event)
                if inspect.isawaitable(result):
                    await result
                self._stats["events_processed"] += 1
            except Exception as exc:  # noqa: BLE001
                self._stats["errors"] += 1
                log.error(
                    "handler %s for %s failed: %s",
                    listener.id, name, exc,
                    exc_info=True,
                )

        return event

    # ------------------------------------------------------------------ #
    # ДИАГНОСТИКА
    # ------------------------------------------------------------------ #
    def get_history(self, limit: int = 100) -> List[Event]:
        return list(islice(self._history, max(0, int(limit))))

    def listener_ids(self, pattern: str) -> List[str]:
        return [lst.id for lst in self._listeners.get(pattern, ())]

    def get_stats(self) -> Dict[str, int]:
        return {
            **self._stats,
            "active_listeners": sum(len(b) for b in self._listeners.values()),
            "event_types": len(self._listeners),
        }
