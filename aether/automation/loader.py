# aether/automation/loader.py
from __future__ import annotations

import secrets
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pydantic
import yaml
from pydantic import BaseModel

from .errors import ValidationError
from .evaluator import validate_conditions
from .types import Action, ActionType, Rule

DEFAULT_PRIORITY = 100


# ---------- DTO входящего правила (то, что присылает API/UI) ---------------


class ActionDTO(BaseModel):
    type: str
    params: Optional[Dict[str, Any]] = None


class RuleDTO(BaseModel):
    """
    Правило, как его присылают снаружи.
    Всё, кроме actions, можно не передавать: подставим значения по умолчанию.
    """
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    enabled: bool = True
    priority: Optional[int] = None
    conditions: Optional[Dict[str, Any]] = None
    actions: List[ActionDTO] = []
    createdAt: Optional[Any] = None


def generate_rule_id() -> str:
    return f"rule_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _pydantic_message(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts) or str(exc)


# ---------------------------------------------------------------------------
def validate_action(action: Action, path: str = "action") -> None:
    """Статическая проверка параметров действия (то, что видно без исполнения)."""
    kind = action.kind
    p = action.params or {}

    if kind is None:
        raise ValidationError(f"{path}: Unknown action type: {action.type}")

    if kind is ActionType.GPIO:
        if p.get("pin") is None or p.get("value") is None:
            raise ValidationError(f"{path}: GPIO action requires pin and value")
        duration = p.get("duration")
        if duration is not None and (
            isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0
        ):
            raise ValidationError(f"{path}: duration must be a non-negative number of ms")
    elif kind is ActionType.DELAY:
        ms = p.get("ms")
        if isinstance(ms, bool) or not isinstance(ms, (int, float)) or ms <= 0:
            raise ValidationError(f"{path}: Delay action requires positive ms value")
    elif kind is ActionType.LOG:
        if not p.get("message"):
            raise ValidationError(f"{path}: Log action requires message")
    elif kind is ActionType.EMIT:
        if not p.get("event"):
            raise ValidationError(f"{path}: Emit action requires event name")
    elif kind is ActionType.HTTP:
        if not p.get("url"):
            raise ValidationError(f"{path}: HTTP action requires url")


def validate_rule(rule: Rule) -> None:
    validate_conditions(rule.conditions)
    for i, action in enumerate(rule.actions):
        validate_action(action, f"actions[{i}]")


def build_rule(raw: Mapping[str, Any]) -> Rule:
    """
    Собрать Rule из входящего словаря:
      - форма проверяется pydantic-моделью;
      - недостающее заполняется по умолчанию (id генерируем);
      - дерево условий и параметры действий проверяются отдельно.
    Любая проблема → ValidationError.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("Rule must be an object")
    try:
        dto = RuleDTO.model_validate(dict(raw))
    except pydantic.ValidationError as exc:
        raise ValidationError(_pydantic_message(exc)) from exc

    data = dict(raw)
    data.update(
        id=dto.id or generate_rule_id(),
        name=dto.name or "Unnamed Rule",
        description=dto.description or "",
        enabled=dto.enabled,
        priority=dto.priority if dto.priority is not None else DEFAULT_PRIORITY,
        conditions=dto.conditions if dto.conditions is not None else {"all": []},
        actions=[a.model_dump() for a in dto.actions],
    )
    rule = Rule.from_dict(data)
    validate_rule(rule)
    return rule


# ---------------------------------------------------------------------------
def load_rules_from_yaml(path: str) -> List[Rule]:
    """
    Загружает правила из YAML-файла вида:

    rules:
      - id: "door_pulse"
        name: "Открыть дверь по кнопке"
        priority: 100
        conditions:
          all:
            - event: pin_change
              pin: 17
              value: 1
        actions:
          - type: gpio
            params: {pin: 5, value: 1, duration: 300}
          - type: log
            params: {message: "Door opened by pin {{pin}}"}

    Каждое правило проходит ту же проверку, что и через add_rule.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"rules file not found: {path}")

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    items = data.get("rules") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValidationError(f"{path}: 'rules' must be a list")

    loaded: List[Rule] = []
    for idx, rd in enumerate(items):
        if not isinstance(rd, dict):
            raise ValidationError(f"{path}: rules[{idx}] must be an object")
        rd = dict(rd)
        rd.setdefault("id", f"r{idx + 1}")
        loaded.append(build_rule(rd))
    return loaded
