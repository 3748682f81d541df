# aether/automation/__init__.py
"""
Модуль автоматики стенда (Rules / Event Bus / Scheduler).

Состав:
  - types.py        → события, правила, действия, результаты
  - errors.py       → иерархия ошибок автоматики
  - event_bus.py    → шина событий (приоритеты, once, история)
  - evaluator.py    → проверка дерева условий
  - schedule.py     → разбор и проверка расписаний HH:MM + дни недели
  - engine.py       → реестр правил + подбор правил под событие
  - actions.py      → исполнители действий (gpio/delay/log/emit/http)
  - tasks.py        → фоновые задачи/таймеры с владельцем (id правила)
  - storage.py      → интерфейсы хранилищ + формат JSON-файла правил
  - repositories.py → JSON-файл и in-memory реализации
  - loader.py       → проверка входящих правил, загрузка из YAML
  - manager.py      → оркестратор: очередь триггеров, планировщик, CRUD
"""
from .engine import RuleEngine
from .actions import ActionExecutor
from .evaluator import ConditionEvaluator
from .event_bus import EventBus
from .manager import AutomationManager
from .errors import AutomationError, ValidationError, ExecutionError, PersistenceError

__all__ = [
    "RuleEngine",
    "ActionExecutor",
    "ConditionEvaluator",
    "EventBus",
    "AutomationManager",
    "AutomationError",
    "ValidationError",
    "ExecutionError",
    "PersistenceError",
]
