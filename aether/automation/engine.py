# aether/automation/engine.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ValidationError
from .evaluator import ConditionEvaluator
from .types import Event, MatchOrder, Rule, utc_now

log = logging.getLogger("automation")


class RuleEngine:
    """
    Правила + их счётчики + пакетная проверка события.

      - add/remove/update/enable/disable;
      - evaluate_event: прогоняет событие по всем ВКЛЮЧЁННЫМ правилам
        и отдаёт совпавшие (по приоритету или в порядке добавления);
      - правило, на котором проверка упала, пропускается
        (error_count += 1), остальные проверяются дальше.
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None) -> None:
        self._evaluator = evaluator or ConditionEvaluator()
        # dict сохраняет порядок добавления, он и есть «insertion order»
        self._rules: Dict[str, Rule] = {}

    @property
    def evaluator(self) -> ConditionEvaluator:
        return self._evaluator

    # ------------------------------------------------------------------ #
    # CRUD
    # ------------------------------------------------------------------ #
    def add_rule(self, rule: Union[Rule, Mapping[str, Any]]) -> Rule:
        if isinstance(rule, Mapping):
            raw = rule
            if not raw.get("id"):
                raise ValidationError("Rule must have an id")
            if raw.get("conditions") is None:
                raise ValidationError("Rule must have conditions")
            if raw.get("actions") is None:
                raise ValidationError("Rule must have actions")
            rule = Rule.from_dict(dict(raw))

        if not rule.id:
            raise ValidationError("Rule must have an id")
        if rule.conditions is None:
            raise ValidationError("Rule must have conditions")
        if rule.actions is None:
            raise ValidationError("Rule must have actions")
        if rule.id in self._rules:
            raise ValidationError(f"Rule {rule.id} already exists")

        self._rules[rule.id] = rule
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def update_rule(self, rule_id: str, updates: Mapping[str, Any]) -> Rule:
        """
        Частичное обновление. Объект правила остаётся тем же (мутируем на месте),
        поэтому уже идущее исполнение видит тот же экземпляр.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            raise ValidationError(f"Rule {rule_id} not found")

        new_id = updates.get("id")
        if new_id is not None and new_id != rule_id:
            raise ValidationError(f"Rule id cannot be changed ({rule_id} -> {new_id})")

        merged = rule.to_dict()
        merged.update(updates)
        merged["id"] = rule_id
        rule.apply(Rule.from_dict(merged))
        return rule

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> Rule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise ValidationError(f"Rule {rule_id} not found")
        rule.enabled = bool(enabled)
        return rule

    def get_rules(self) -> List[Rule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    def has_rule(self, rule_id: str) -> bool:
        return rule_id in self._rules

    def clear(self) -> None:
        self._rules.clear()

    # ------------------------------------------------------------------ #
    # ПРОВЕРКА
    # ------------------------------------------------------------------ #
    def evaluate_event(
        self,
        event: Event,
        order: MatchOrder = MatchOrder.PRIORITY,
    ) -> List[Rule]:
        matched: List[Rule] = []

        # снимок: правила могут меняться, пока идём по списку
        for rule in list(self._rules.values()):
            if not rule.enabled:
                continue
            try:
                ok = self._evaluator.evaluate(rule.conditions, event)
            except Exception as exc:  # noqa: BLE001
                rule.error_count += 1
                log.error("error evaluating rule %s (%s): %s", rule.id, rule.name, exc)
                continue

            log.debug("rule %s (%s): %s", rule.id, rule.name, "OK" if ok else "NO")
            if ok:
                matched.append(rule)

        if order is MatchOrder.PRIORITY:
            matched.sort(key=lambda r: -r.priority)
        return matched

    # ------------------------------------------------------------------ #
    # СЧЁТЧИКИ
    # ------------------------------------------------------------------ #
    def update_rule_stats(self, rule_id: str, success: bool = True) -> None:
        rule = self._rules.get(rule_id)
        if rule is None:
            # правило удалили, пока шли его действия
            return
        rule.execution_count += 1
        rule.last_executed = utc_now()
        if not success:
            rule.error_count += 1

    def get_stats(self) -> Dict[str, int]:
        rules = list(self._rules.values())
        return {
            "total_rules": len(rules),
            "enabled_rules": sum(1 for r in rules if r.enabled),
            "total_executions": sum(r.execution_count for r in rules),
            "total_errors": sum(r.error_count for r in rules),
        }
