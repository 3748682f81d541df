# aether/services/gpio_loopback.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from aether.automation.event_bus import EventBus
from aether.automation.types import PIN_CHANGE_EVENT, PIN_WRITE_EVENT, Event, utc_now

log = logging.getLogger("automation.gpio")


class LoopbackGpio:
    """
    GPIO без железа: уровни пинов в памяти.
      - set_input(pin, value) → pin_change на шину (только если уровень поменялся);
      - pin_write с шины → запоминаем уровень и саму команду в writes;
      - echo=True → запись на пин тоже порождает pin_change (петля выход → вход).
    Для стенда без плат и для тестов.
    """

    def __init__(self, bus: EventBus, *, echo: bool = False) -> None:
        self._bus = bus
        self.echo = echo
        self.levels: Dict[Any, int] = {}
        self.writes: List[Dict[str, Any]] = []
        self._listener_id: Optional[str] = None

    def attach(self) -> "LoopbackGpio":
        if self._listener_id is None:
            self._listener_id = self._bus.subscribe(PIN_WRITE_EVENT, self._on_write)
        return self

    def detach(self) -> None:
        if self._listener_id is not None:
            self._bus.unsubscribe(PIN_WRITE_EVENT, self._listener_id)
            self._listener_id = None

    def read(self, pin: Any) -> int:
        return self.levels.get(pin, 0)

    async def set_input(self, pin: Any, value: Any) -> bool:
        level = 1 if value else 0
        if self.levels.get(pin) == level:
            return False
        self.levels[pin] = level
        await self._bus.publish(
            PIN_CHANGE_EVENT,
            {"pin": pin, "value": level, "timestamp": utc_now().isoformat()},
        )
        return True

    async def _on_write(self, event: Event) -> None:
        pin = event.data.get("pin")
        value = event.data.get("value")
        self.writes.append(dict(event.data))
        log.debug("pin_write: %s = %s", pin, value)
        if self.echo:
            await self.set_input(pin, value)
        else:
            self.levels[pin] = 1 if value else 0
