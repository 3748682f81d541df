"""Shared fixtures for automation tests."""

from typing import Any, Dict, List

import pytest

from aether.automation.event_bus import EventBus
from aether.automation.types import Event


@pytest.fixture
def bus():
    return EventBus(history_limit=100)


@pytest.fixture
def recorder():
    """Collects events delivered to a handler."""

    class Recorder:
        def __init__(self):
            self.events: List[Event] = []

        def __call__(self, event: Event) -> None:
            self.events.append(event)

        @property
        def data(self) -> List[Dict[str, Any]]:
            return [e.data for e in self.events]

    return Recorder()


@pytest.fixture
def pin_rule():
    """Factory: rule dict that fires on pin_change for pin/value."""

    def make(rule_id: str = "door", pin: int = 17, value: int = 1, **extra) -> Dict[str, Any]:
        rule = {
            "id": rule_id,
            "name": f"Rule {rule_id}",
            "conditions": {"all": [{"event": "pin_change", "pin": pin, "value": value}]},
            "actions": [{"type": "log", "params": {"message": f"{rule_id} fired"}}],
        }
        rule.update(extra)
        return rule

    return make
