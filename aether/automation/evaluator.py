# aether/automation/evaluator.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ConditionEvaluationError, ValidationError
from .types import ConditionKind, Event


class _Missing:
    """Значение по несуществующему пути (аналог undefined)."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

# порядок важен: срабатывает первый найденный ключ
OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin")

_SHAPE_KEYS = ("all", "any", "schedule")


def get_nested_value(obj: Any, path: str) -> Any:
    """
    Достаёт значение по пути вида "a.b.0.c".
    Если на каком-то шаге ключа нет: вернёт MISSING.
    """
    current = obj
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def strict_equal(a: Any, b: Any) -> bool:
    """Равенство без неявных приведений: True != 1, MISSING равен только себе."""
    if a is MISSING or b is MISSING:
        return a is b
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    try:
        return bool(a == b)
    except Exception:  # noqa: BLE001
        return False


def condition_kind(node: Any) -> ConditionKind:
    """Определяет форму узла. Две формы сразу → ошибка."""
    if not isinstance(node, Mapping):
        raise ConditionEvaluationError(
            f"Condition node must be a mapping, got {type(node).__name__}"
        )
    shapes = [k for k in _SHAPE_KEYS if k in node]
    if len(shapes) > 1:
        raise ConditionEvaluationError(
            f"Condition node has more than one shape: {', '.join(shapes)}"
        )
    if not shapes:
        return ConditionKind.LEAF

    kind = ConditionKind(shapes[0])
    if kind in (ConditionKind.ALL, ConditionKind.ANY) and not isinstance(node[shapes[0]], list):
        raise ConditionEvaluationError(f"'{shapes[0]}' must be a list of conditions")
    return kind


class ConditionEvaluator:
    """
    Проверяет дерево условий правила против события.
    Состояния не держит: одно и то же дерево + событие → один и тот же ответ.
    """

    # ------------------------------------------------------------------
    def evaluate(self, conditions: Optional[Mapping[str, Any]], event: Event) -> bool:
        if conditions is None:
            return False

        kind = condition_kind(conditions)

        if kind is ConditionKind.ALL:
            # пустой all → истина
            for cond in conditions["all"]:
                if not self.evaluate(cond, event):
                    return False
            return True

        if kind is ConditionKind.ANY:
            # пустой any → ложь
            for cond in conditions["any"]:
                if self.evaluate(cond, event):
                    return True
            return False

        if kind is ConditionKind.SCHEDULE:
            # расписание стреляет только из планировщика
            return False

        return self.evaluate_leaf(conditions, event)

    # ------------------------------------------------------------------
    def evaluate_leaf(self, condition: Mapping[str, Any], event: Event) -> bool:
        guard = condition.get("event")
        if guard and event.name != guard:
            return False

        for key, expected in condition.items():
            if key == "event":
                continue
            actual = get_nested_value(event.data, key)
            if not self.compare_values(actual, expected):
                return False
        return True

    # ------------------------------------------------------------------
    def compare_values(self, actual: Any, expected: Any) -> bool:
        if strict_equal(actual, expected):
            return True

        if not isinstance(expected, Mapping):
            return False

        for op in OPERATORS:
            if op not in expected:
                continue
            operand = expected[op]
            if op == "$eq":
                return strict_equal(actual, operand)
            if op == "$ne":
                return not strict_equal(actual, operand)
            if op in ("$in", "$nin"):
                if not isinstance(operand, list):
                    raise ConditionEvaluationError(f"{op} expects a list, got {operand!r}")
                found = any(strict_equal(actual, item) for item in operand)
                return found if op == "$in" else not found
            return self._order(op, actual, operand)

        return False

    @staticmethod
    def _order(op: str, actual: Any, operand: Any) -> bool:
        if actual is MISSING or actual is None or operand is None:
            return False
        try:
            if op == "$gt":
                return actual > operand
            if op == "$gte":
                return actual >= operand
            if op == "$lt":
                return actual < operand
            return actual <= operand
        except TypeError:
            # несравнимые типы → условие ложно
            return False


# ----------------------------------------------------------------------
def validate_conditions(node: Any, path: str = "conditions") -> None:
    """
    Проверка формы дерева условий при добавлении/изменении правила.
    Бросает ValidationError с путём до плохого узла.
    """
    try:
        kind = condition_kind(node)
    except ConditionEvaluationError as exc:
        raise ValidationError(f"{path}: {exc}") from exc

    if kind in (ConditionKind.ALL, ConditionKind.ANY):
        children: List[Any] = node[kind.value]
        for i, child in enumerate(children):
            validate_conditions(child, f"{path}.{kind.value}[{i}]")
        return

    if kind is ConditionKind.SCHEDULE:
        # импорт здесь, чтобы schedule.py не тянул evaluator обратно
        from .schedule import parse_schedule

        parse_schedule(node["schedule"], path=f"{path}.schedule")
        return

    for key, expected in node.items():
        if isinstance(expected, Mapping):
            for op in ("$in", "$nin"):
                if op in expected and not isinstance(expected[op], list):
                    raise ValidationError(f"{path}.{key}: {op} expects a list")


def describe(conditions: Optional[Dict[str, Any]]) -> str:
    """Короткое текстовое представление условий для логов."""
    if not conditions:
        return "<none>"
    try:
        kind = condition_kind(conditions)
    except ConditionEvaluationError:
        return "<invalid>"
    if kind is ConditionKind.ALL:
        return " AND ".join(f"({describe(c)})" for c in conditions["all"]) or "<always>"
    if kind is ConditionKind.ANY:
        return " OR ".join(f"({describe(c)})" for c in conditions["any"]) or "<never>"
    if kind is ConditionKind.SCHEDULE:
        sch = conditions["schedule"]
        return f"at {sch.get('time')} days={sch.get('days')}"
    return ", ".join(f"{k}={v!r}" for k, v in conditions.items())
