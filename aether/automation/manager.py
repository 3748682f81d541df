# aether/automation/manager.py
from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import yaml

from aether.core.config import Settings, settings as default_settings

from .actions import ActionExecutor, HttpSendFunc
from .engine import RuleEngine
from .errors import PersistenceError, ValidationError
from .evaluator import describe
from .event_bus import EventBus
from .loader import build_rule, load_rules_from_yaml, validate_rule
from .repositories import InMemoryActionLogStorage, JsonFileRuleStorage
from .schedule import minute_key, should_trigger
from .storage import ActionLogStorage, RuleStorage, dump_rules_document, parse_rules_document
from .tasks import NO_OWNER, BackgroundTasks
from .types import (
    PIN_CHANGE_EVENT,
    SCHEDULE_EVENT,
    ActionResult,
    Event,
    MatchOrder,
    Rule,
    RuleState,
)

log = logging.getLogger("automation")


@dataclass
class _Trigger:
    """Элемент очереди: событие + (для расписания) заранее известные правила."""
    event: Event
    rule_ids: Optional[List[str]] = None


class AutomationManager:
    """
    Оркестратор автоматики:
      - слушает pin_change на шине и складывает события в ограниченную очередь;
      - один воркер разбирает очередь: проверяет включённые правила и
        выполняет совпавшие строго по очереди;
      - планировщик раз в scheduler_interval_s проверяет правила с расписанием;
      - любое изменение правил → фоновое сохранение (ошибки только в лог);
      - удаление/выключение правила снимает его отложенные таймеры.

    Правила и таймеры принадлежат только этому объекту (engine + tasks)
    и меняются только из его event loop.

    Очередь переполнена → выкидываем самый старый триггер (dropped_triggers += 1):
    для стенда свежие изменения пинов важнее старых.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        storage: Optional[RuleStorage] = None,
        *,
        settings: Optional[Settings] = None,
        action_log: Optional[ActionLogStorage] = None,
        http_send: Optional[HttpSendFunc] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or default_settings
        s = self._settings

        self._bus = bus or EventBus(history_limit=s.history_limit)
        self._storage = storage or JsonFileRuleStorage(
            s.rules_path,
            backups_dir=s.backups_dir,
            backups_keep=s.backups_keep,
        )
        self._tasks = BackgroundTasks()
        self._action_log = action_log or InMemoryActionLogStorage(max_entries=s.action_log_size)
        self._executor = ActionExecutor(
            self._bus,
            tasks=self._tasks,
            action_log=self._action_log,
            http_send=http_send,
        )
        self._engine = RuleEngine()
        self._clock = clock or datetime.now
        self._order = MatchOrder(str(s.trigger_order).lower())

        self._queue: "asyncio.Queue[_Trigger]" = asyncio.Queue(maxsize=max(1, s.trigger_queue_size))
        self._save_lock = asyncio.Lock()
        self._worker: Optional[asyncio.Task] = None
        self._scheduler: Optional[asyncio.Task] = None
        self._listener_id: Optional[str] = None

        self._executing: Set[str] = set()
        self._last_fired_minute: Dict[str, str] = {}
        self._total_triggers = 0
        self._dropped_triggers = 0
        # False → хранилище битое, работаем только в памяти и файл не трогаем
        self._persist = True

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        bus: Optional[EventBus] = None,
        with_http: bool = True,
    ) -> "AutomationManager":
        """Сборка «как на стенде»: JSON-файл правил + реальный http-отправитель."""
        from aether.services.http_sender import HttpSender

        s = settings or default_settings
        http_send = HttpSender(timeout=s.http_timeout_s) if with_http else None
        return cls(bus=bus, settings=s, http_send=http_send)

    # ------------------------------------------------------------------ #
    # СВОЙСТВА
    # ------------------------------------------------------------------ #
    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def engine(self) -> RuleEngine:
        return self._engine

    @property
    def executor(self) -> ActionExecutor:
        return self._executor

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    @property
    def action_log(self) -> ActionLogStorage:
        return self._action_log

    @property
    def persistence_enabled(self) -> bool:
        return self._persist

    # ------------------------------------------------------------------ #
    # ЖИЗНЕННЫЙ ЦИКЛ
    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        count = await self.load_rules()
        if count == 0:
            self._seed_rules()

        if self._listener_id is None:
            self._listener_id = self._bus.subscribe(PIN_CHANGE_EVENT, self._on_pin_change)
        if self._worker is None:
            self._worker = asyncio.create_task(self._worker_loop(), name="automation-worker")
        if self._scheduler is None:
            self._scheduler = asyncio.create_task(self._scheduler_loop(), name="automation-scheduler")

        log.info(
            "initialized with %d rules (trigger_order=%s, tick=%.1fs)",
            len(self._engine.get_rules()),
            self._order.value,
            self._settings.scheduler_interval_s,
        )

    async def shutdown(self) -> None:
        log.info("shutting down...")
        if self._listener_id is not None:
            self._bus.unsubscribe(PIN_CHANGE_EVENT, self._listener_id)
            self._listener_id = None

        loops = [t for t in (self._scheduler, self._worker) if t is not None]
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        self._scheduler = None
        self._worker = None

        # таймеры правил снимаем, а сохранения/http дожидаемся
        self._tasks.cancel_owners(keep={NO_OWNER})
        await self._tasks.join()

    async def load_rules(self) -> int:
        """
        Загрузить правила из хранилища. Нет хранилища → 0 правил.
        Хранилище битое → лог + работаем в памяти, сохранения выключаем.
        """
        try:
            rules = await asyncio.to_thread(self._storage.load_rules)
        except (PersistenceError, ValidationError) as exc:
            log.error("error loading rules, continuing in-memory only: %s", exc)
            self._persist = False
            return 0

        self._engine.clear()
        for rule in rules:
            try:
                self._engine.add_rule(rule)
            except ValidationError as exc:
                log.warning("skipping stored rule %r: %s", rule.id, exc)

        log.info("loaded %d rules from storage", len(self._engine.get_rules()))
        return len(self._engine.get_rules())

    def _seed_rules(self) -> None:
        path = self._settings.seed_rules_file
        if not path or not Path(path).exists():
            return
        try:
            rules = load_rules_from_yaml(path)
        except (ValidationError, yaml.YAMLError, OSError) as exc:
            log.error("error loading seed rules from %s: %s", path, exc)
            return

        for rule in rules:
            try:
                self._engine.add_rule(rule)
            except ValidationError as exc:
                log.warning("skipping seed rule %r: %s", rule.id, exc)
        log.info("seeded %d rules from %s", len(rules), path)
        self._schedule_save()

    # ------------------------------------------------------------------ #
    # CRUD (вызывается слоем API)
    # ------------------------------------------------------------------ #
    def add_rule(self, data: Mapping[str, Any]) -> str:
        rule = build_rule(data)
        self._engine.add_rule(rule)
        self._schedule_save()
        log.info("added rule: %s (%s) when %s", rule.name, rule.id, describe(rule.conditions))
        return rule.id

    def remove_rule(self, rule_id: str) -> None:
        rule = self._require(rule_id)
        self._engine.remove_rule(rule_id)
        self._tasks.cancel(rule_id)
        self._last_fired_minute.pop(rule_id, None)
        self._schedule_save()
        log.info("removed rule: %s (%s)", rule.name, rule_id)

    def update_rule(self, rule_id: str, updates: Mapping[str, Any]) -> Rule:
        rule = self._require(rule_id)

        # сначала проверяем итоговое правило целиком, потом мутируем
        merged = rule.to_dict()
        merged.update(updates)
        merged["id"] = rule_id
        validate_rule(Rule.from_dict(merged))

        self._engine.update_rule(rule_id, updates)
        if not rule.enabled:
            self._tasks.cancel(rule_id)
        self._schedule_save()
        log.info("updated rule: %s (%s)", rule.name, rule_id)
        return rule

    def enable_rule(self, rule_id: str) -> None:
        rule = self._engine.set_rule_enabled(rule_id, True)
        self._schedule_save()
        log.info("enabled rule: %s (%s)", rule.name, rule_id)

    def disable_rule(self, rule_id: str) -> None:
        rule = self._engine.set_rule_enabled(rule_id, False)
        self._tasks.cancel(rule_id)
        self._schedule_save()
        log.info("disabled rule: %s (%s)", rule.name, rule_id)

    def get_rules(self) -> List[Rule]:
        return self._engine.get_rules()

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._engine.get_rule(rule_id)

    def rule_state(self, rule_id: str) -> RuleState:
        rule = self._require(rule_id)
        if rule_id in self._executing:
            return RuleState.EXECUTING
        return RuleState.IDLE if rule.enabled else RuleState.DISABLED

    def get_stats(self) -> Dict[str, Any]:
        rules = self._engine.get_rules()
        return {
            "total_triggers": self._total_triggers,
            "total_rules": len(rules),
            "active_rules": sum(1 for r in rules if r.enabled),
            "executions": {r.id: r.execution_count for r in rules},
            "dropped_triggers": self._dropped_triggers,
        }

    def _require(self, rule_id: str) -> Rule:
        rule = self._engine.get_rule(rule_id)
        if rule is None:
            raise ValidationError(f"Rule {rule_id} not found")
        return rule

    # ------------------------------------------------------------------ #
    # ЭКСПОРТ / ИМПОРТ / БЭКАП
    # ------------------------------------------------------------------ #
    def export_rules(self) -> str:
        return dump_rules_document(self._engine.get_rules(), stamp_key="exportedAt")

    def import_rules(self, text: str, *, replace: bool = False) -> int:
        """
        Импорт правил из JSON. Всё проверяем до первой мутации:
        битое правило или дубль id → ValidationError, ничего не меняется.
        """
        rules = parse_rules_document(text)
        seen: Set[str] = set()
        for rule in rules:
            if not rule.id:
                raise ValidationError("Rule must have an id")
            if rule.id in seen or (not replace and self._engine.has_rule(rule.id)):
                raise ValidationError(f"Rule {rule.id} already exists")
            seen.add(rule.id)
            validate_rule(rule)

        if replace:
            for old in self._engine.get_rules():
                self._tasks.cancel(old.id)
            self._engine.clear()
            self._last_fired_minute.clear()

        for rule in rules:
            self._engine.add_rule(rule)
        self._schedule_save()
        log.info("imported %d rules (replace=%s)", len(rules), replace)
        return len(rules)

    def backup_rules(self) -> Optional[Path]:
        create_backup = getattr(self._storage, "create_backup", None)
        if create_backup is None:
            return None
        return create_backup()

    # ------------------------------------------------------------------ #
    # ТРИГГЕРЫ
    # ------------------------------------------------------------------ #
    def _on_pin_change(self, event: Event) -> None:
        log.debug("GPIO change detected: pin %s = %s", event.data.get("pin"), event.data.get("value"))
        self._enqueue(_Trigger(event=event))

    async def trigger_event(self, name: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Ручной запуск (для API/тестов): событие идёт в ту же очередь."""
        event = Event(name=name, data=dict(data or {}))
        log.info("manual trigger: %s %s", name, event.data)
        self._enqueue(_Trigger(event=event))
        return event

    async def wait_idle(self) -> None:
        """Дождаться, пока очередь триггеров разберётся."""
        await self._queue.join()

    def _enqueue(self, trigger: _Trigger) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            self._queue.task_done()
            self._dropped_triggers += 1
            log.warning(
                "trigger queue full (%d), dropped oldest event %s",
                self._queue.maxsize,
                dropped.event.name,
            )
        self._queue.put_nowait(trigger)

    async def _worker_loop(self) -> None:
        while True:
            trigger = await self._queue.get()
            try:
                await self._process(trigger)
            except Exception:  # noqa: BLE001
                log.exception("error processing trigger %s", trigger.event.name)
            finally:
                self._queue.task_done()

    async def _process(self, trigger: _Trigger) -> None:
        event = trigger.event
        if trigger.rule_ids is not None:
            rules = [
                r for r in (self._engine.get_rule(rid) for rid in trigger.rule_ids)
                if r is not None and r.enabled
            ]
        else:
            rules = self._engine.evaluate_event(event, order=self._order)

        if not rules:
            log.debug("no rules matched %s %s", event.name, event.data)
            return

        # строго по очереди: медленное действие одного правила задерживает следующее
        for rule in rules:
            await self.execute_rule(rule, event)

    async def execute_rule(self, rule: Rule, event: Event) -> List[ActionResult]:
        log.info("executing rule: %s (%s)", rule.name, rule.id)
        self._executing.add(rule.id)
        try:
            results = await self._executor.execute_actions(
                list(rule.actions),
                self._build_context(rule, event),
                owner=rule.id,
            )
        finally:
            self._executing.discard(rule.id)

        self._total_triggers += 1
        self._engine.update_rule_stats(rule.id, success=all(r.success for r in results))

        # правило удалили/выключили, пока шли действия → его новые таймеры не нужны
        current = self._engine.get_rule(rule.id)
        if current is not rule or not current.enabled:
            self._tasks.cancel(rule.id)

        failed = sum(1 for r in results if not r.success)
        if failed:
            log.warning("rule completed with %d failed action(s): %s", failed, rule.name)
        else:
            log.info("rule completed: %s", rule.name)
        return results

    @staticmethod
    def _build_context(rule: Rule, event: Event) -> Dict[str, Any]:
        ctx: Dict[str, Any] = dict(event.data)
        ctx.setdefault("event", event.name)
        ctx.setdefault("timestamp", event.timestamp.isoformat())
        ctx["rule"] = {"id": rule.id, "name": rule.name}
        return ctx

    # ------------------------------------------------------------------ #
    # ПЛАНИРОВЩИК
    # ------------------------------------------------------------------ #
    async def _scheduler_loop(self) -> None:
        interval = float(self._settings.scheduler_interval_s)
        while True:
            await asyncio.sleep(interval)
            try:
                self.check_scheduled_rules()
            except Exception:  # noqa: BLE001
                log.exception("scheduler tick failed")

    def check_scheduled_rules(self, now: Optional[datetime] = None) -> List[str]:
        """
        Один тик планировщика. Вернёт id правил, поставленных в очередь.
        Одно правило: не больше одного раза за минуту, как бы ни плавал тик.
        """
        now = now or self._clock()
        key = minute_key(now)
        fired: List[str] = []

        for rule in self._engine.get_rules():
            if not rule.enabled:
                continue
            schedule = rule.schedule
            if schedule is None or not should_trigger(schedule, now):
                continue
            if self._last_fired_minute.get(rule.id) == key:
                continue

            self._last_fired_minute[rule.id] = key
            event = Event(name=SCHEDULE_EVENT, data={"time": now.isoformat(), "rule_id": rule.id})
            self._enqueue(_Trigger(event=event, rule_ids=[rule.id]))
            fired.append(rule.id)
            log.info("scheduled rule due: %s (%s) at %s", rule.name, rule.id, key)

        return fired

    # ------------------------------------------------------------------ #
    # СОХРАНЕНИЕ
    # ------------------------------------------------------------------ #
    def _schedule_save(self) -> None:
        if not self._persist:
            log.debug("persistence disabled, rules kept in memory only")
            return

        snapshot = copy.deepcopy(self._engine.get_rules())
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # вызвали не из event loop: сохраняем прямо здесь
            self._save_snapshot(snapshot)
            return
        self._tasks.spawn(self._save_async(snapshot), label="save rules")

    async def _save_async(self, snapshot: List[Rule]) -> None:
        # lock сохраняет порядок: более поздний снимок пишется позже
        async with self._save_lock:
            await asyncio.to_thread(self._save_snapshot, snapshot)

    def _save_snapshot(self, snapshot: List[Rule]) -> bool:
        try:
            ok = self._storage.save_rules(snapshot)
        except Exception as exc:  # noqa: BLE001
            log.error("error saving rules: %s", exc)
            return False
        if ok:
            log.debug("saved %d rules", len(snapshot))
        else:
            log.warning("rules were not saved, keeping them in memory")
        return bool(ok)
