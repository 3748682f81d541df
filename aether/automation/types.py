# aether/automation/types.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import ValidationError


# Имена служебных событий шины
PIN_CHANGE_EVENT = "pin_change"   # GPIO → автоматика
PIN_WRITE_EVENT = "pin_write"     # автоматика → GPIO
SCHEDULE_EVENT = "schedule"       # тик планировщика


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# === 1. БАЗОВЫЕ ENUM'Ы =======================================================

class ActionType(Enum):
    """Что умеет делать движок. Список закрытый."""
    GPIO = "gpio"      # выставить пин (с возвратом через duration)
    DELAY = "delay"    # пауза внутри списка действий
    LOG = "log"        # запись в журнал автоматики
    EMIT = "emit"      # переопубликовать событие на шину
    HTTP = "http"      # подготовить внешний вызов


class ConditionKind(Enum):
    """Форма узла дерева условий."""
    ALL = "all"            # AND
    ANY = "any"            # OR
    SCHEDULE = "schedule"  # только для планировщика
    LEAF = "leaf"          # сравнение полей события


class RuleState(Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    EXECUTING = "executing"


class MatchOrder(Enum):
    """Порядок, в котором отдаются совпавшие правила."""
    PRIORITY = "priority"    # по убыванию priority, при равенстве по порядку добавления
    INSERTION = "insertion"  # как добавляли


# === 2. СОБЫТИЯ И ПОДПИСЧИКИ =================================================

@dataclass
class Event:
    """Событие шины."""
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class Listener:
    id: str
    pattern: str
    handler: EventHandler
    priority: int = 0
    once: bool = False
    created: datetime = field(default_factory=utc_now)


# === 3. ДЕЙСТВИЯ =============================================================

@dataclass
class Action:
    """
    Одно действие правила.
    type хранится строкой: неизвестный тип должен доехать до исполнителя
    и упасть там с понятной ошибкой, а не при разборе.
    """
    type: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[ActionType]:
        try:
            return ActionType(self.type)
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, d: Union["Action", Dict[str, Any]]) -> "Action":
        if isinstance(d, Action):
            return d
        return cls(type=str(d.get("type", "")), params=dict(d.get("params") or {}))


@dataclass
class ActionResult:
    """Результат исполнения одного действия."""
    success: bool
    action_type: str
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "actionType": self.action_type}
        if self.success:
            out["result"] = self.result
        else:
            out["error"] = self.error
        return out


@dataclass
class ActionLogEntry:
    """Запись журнала log-действий (то, что видно в UI стенда)."""
    ts: datetime
    level: str
    message: str
    rule_id: Optional[str] = None


# === 4. ПРАВИЛО ==============================================================

def _ts_to_json(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _ts_from_json(value: Any) -> Optional[datetime]:
    """
    Метки времени в файле бывают ISO-строкой или epoch в миллисекундах
    (так их писал старый бэкенд).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# python-атрибут → ключ в JSON-файле
_JSON_KEYS = {
    "created_at": "createdAt",
    "execution_count": "executionCount",
    "last_executed": "lastExecuted",
    "error_count": "errorCount",
}


@dataclass
class Rule:
    """Правило автоматизации: условия → список действий."""
    id: str
    name: str = "Unnamed Rule"
    description: str = ""
    enabled: bool = True
    priority: int = 0
    conditions: Optional[Dict[str, Any]] = None
    actions: List[Action] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    execution_count: int = 0
    last_executed: Optional[datetime] = None
    error_count: int = 0

    @property
    def schedule(self) -> Optional[Dict[str, Any]]:
        """Расписание берём только с верхнего уровня условий."""
        conds = self.conditions
        if isinstance(conds, dict) and isinstance(conds.get("schedule"), dict):
            return conds["schedule"]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "priority": self.priority,
            "conditions": self.conditions,
            "actions": [a.to_dict() for a in self.actions],
            "createdAt": _ts_to_json(self.created_at),
            "executionCount": self.execution_count,
            "lastExecuted": _ts_to_json(self.last_executed),
            "errorCount": self.error_count,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Rule":
        """
        Понимает и camelCase из файла, и snake_case из python-кода.
        Счётчики из старого формата (stats.executions/errors) тоже подхватываем.
        Поле не приводится к своему типу → ValidationError.
        """
        if not isinstance(d, dict):
            raise ValidationError(f"Rule must be an object, got {type(d).__name__}")
        try:
            return cls._from_mapping(d)
        except ValidationError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(f"Rule {d.get('id')!r}: {exc}") from exc

    @classmethod
    def _from_mapping(cls, d: Dict[str, Any]) -> "Rule":
        stats = d.get("stats") or {}

        def pick(attr: str, default: Any = None) -> Any:
            key = _JSON_KEYS.get(attr)
            if key and key in d:
                return d[key]
            return d.get(attr, default)

        return cls(
            id=str(d.get("id") or ""),
            name=str(d.get("name") or "Unnamed Rule"),
            description=str(d.get("description") or ""),
            enabled=d.get("enabled", True) is not False,
            priority=int(d.get("priority") or 0),
            conditions=d.get("conditions"),
            actions=[Action.from_dict(a) for a in (d.get("actions") or [])],
            created_at=_ts_from_json(pick("created_at")) or utc_now(),
            execution_count=int(pick("execution_count") or stats.get("executions") or 0),
            last_executed=_ts_from_json(pick("last_executed") or stats.get("lastExecuted")),
            error_count=int(pick("error_count") or stats.get("errors") or 0),
        )

    def apply(self, other: "Rule") -> None:
        """Переписать поля на месте (update не меняет identity объекта)."""
        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))
