# aether/automation/actions.py
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .errors import ExecutionError
from .evaluator import MISSING, get_nested_value
from .event_bus import EventBus
from .storage import ActionLogStorage
from .tasks import BackgroundTasks
from .types import (
    PIN_WRITE_EVENT,
    Action,
    ActionLogEntry,
    ActionResult,
    ActionType,
    utc_now,
)

log = logging.getLogger("automation.actions")

# Отправка подготовленного http-запроса: descriptor → что угодно
HttpSendFunc = Callable[[Dict[str, Any]], Awaitable[Any]]

_TOKEN_RE = re.compile(r"\{\{([^}]+)\}\}")


# ---- шаблоны {{path}} ------------------------------------------------------

def _render(value: Any) -> str:
    """Как значение попадёт в строку: true/false/null и компактный JSON для структур."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(value)


def interpolate(template: str, context: Optional[Mapping[str, Any]]) -> str:
    """
    Подставляет {{path}} из context.
    Если путь не нашёлся: токен остаётся как есть.
    """
    def _sub(match: "re.Match[str]") -> str:
        value = get_nested_value(context or {}, match.group(1).strip())
        if value is MISSING:
            return match.group(0)
        return _render(value)

    return _TOKEN_RE.sub(_sub, template)


def interpolate_object(obj: Any, context: Optional[Mapping[str, Any]]) -> Any:
    """Рекурсивно по спискам и словарям; строки через interpolate, остальное как есть."""
    if isinstance(obj, str):
        return interpolate(obj, context)
    if isinstance(obj, (list, tuple)):
        return [interpolate_object(item, context) for item in obj]
    if isinstance(obj, Mapping):
        return {key: interpolate_object(value, context) for key, value in obj.items()}
    return obj


def _invert(value: Any) -> int:
    return 0 if value == 1 else 1


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _raw_type(raw: Any) -> str:
    """Тип действия для отчёта, даже если само действие битое."""
    if isinstance(raw, Action):
        return raw.type
    if isinstance(raw, Mapping):
        return str(raw.get("type") or "")
    return ""


class ActionExecutor:
    """
    Исполняет действия правила.

    Конкретный GPIO/HTTP сюда не зашит: пин-команды уходят событием
    pin_write на шину, http-запрос отдаётся коллбеком (если задан).
    Ошибка одного действия не останавливает список.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        tasks: Optional[BackgroundTasks] = None,
        action_log: Optional[ActionLogStorage] = None,
        http_send: Optional[HttpSendFunc] = None,
    ) -> None:
        self._bus = bus
        self._tasks = tasks or BackgroundTasks()
        self._action_log = action_log
        self._http_send = http_send
        self._stats = {"actions_executed": 0, "errors": 0}

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    # --------------------------------------------------------------------- #
    # ВЫПОЛНИТЬ НЕСКОЛЬКО ДЕЙСТВИЙ
    # --------------------------------------------------------------------- #
    async def execute_actions(
        self,
        actions: Iterable[Union[Action, Dict[str, Any]]],
        context: Optional[Dict[str, Any]] = None,
        *,
        owner: Optional[str] = None,
    ) -> List[ActionResult]:
        """
        Строго по порядку. Упавшее действие фиксируем и идём дальше.
        owner: id правила: под ним регистрируются таймеры возврата пинов.
        """
        results: List[ActionResult] = []

        for raw in actions:
            action_type = _raw_type(raw)
            try:
                action = Action.from_dict(raw)
                result = await self.execute_action(action, context, owner=owner)
            except Exception as exc:  # noqa: BLE001
                self._stats["errors"] += 1
                log.error("error executing %s: %s", action_type or "?", exc)
                results.append(ActionResult(success=False, action_type=action_type, error=str(exc)))
            else:
                self._stats["actions_executed"] += 1
                results.append(ActionResult(success=True, action_type=action.type, result=result))

        return results

    # --------------------------------------------------------------------- #
    # ВЫПОЛНИТЬ ОДНО ДЕЙСТВИЕ
    # --------------------------------------------------------------------- #
    async def execute_action(
        self,
        action: Union[Action, Dict[str, Any]],
        context: Optional[Dict[str, Any]] = None,
        *,
        owner: Optional[str] = None,
    ) -> Any:
        action = Action.from_dict(action)
        params = action.params or {}
        ctx = context or {}

        kind = action.kind
        if kind is ActionType.GPIO:
            return await self._do_gpio(params, owner)
        if kind is ActionType.DELAY:
            return await self._do_delay(params)
        if kind is ActionType.LOG:
            return self._do_log(params, ctx, owner)
        if kind is ActionType.EMIT:
            return await self._do_emit(params, ctx)
        if kind is ActionType.HTTP:
            return self._do_http(params, ctx, owner)

        raise ExecutionError(f"Unknown action type: {action.type}")

    # --------------------------------------------------------------------- #
    # ВНУТРЕННИЕ: конкретные действия
    # --------------------------------------------------------------------- #
    async def _do_gpio(self, params: Dict[str, Any], owner: Optional[str]) -> Dict[str, Any]:
        pin = params.get("pin")
        value = params.get("value")
        duration = params.get("duration")

        if pin is None or value is None:
            raise ExecutionError("GPIO action requires pin and value")

        intent: Dict[str, Any] = {"pin": pin, "value": value}
        if duration is not None:
            intent["duration"] = duration

        log.info("setting GPIO %s = %s", pin, value)
        await self._bus.publish(PIN_WRITE_EVENT, intent)

        # возврат не ждём: действие завершено, как только ушла первая команда
        if _is_number(duration) and duration > 0:
            revert = _invert(value)

            async def _revert() -> None:
                log.info("resetting GPIO %s = %s after %sms", pin, revert, duration)
                await self._bus.publish(PIN_WRITE_EVENT, {"pin": pin, "value": revert})

            self._tasks.call_later(
                duration / 1000.0,
                _revert,
                owner=owner,
                label=f"revert gpio {pin}",
            )

        return {"pin": pin, "value": value, "duration": duration}

    async def _do_delay(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ms = params.get("ms")
        if not _is_number(ms) or ms <= 0:
            raise ExecutionError("Delay action requires positive ms value")

        log.debug("delaying for %sms", ms)
        await asyncio.sleep(ms / 1000.0)
        return {"delayed": ms}

    def _do_log(
        self,
        params: Dict[str, Any],
        ctx: Dict[str, Any],
        owner: Optional[str],
    ) -> Dict[str, Any]:
        message = params.get("message")
        if not message:
            raise ExecutionError("Log action requires message")

        level = str(params.get("level") or "info").lower()
        text = interpolate(str(message), ctx)

        py_level = logging.getLevelName(level.upper())
        if not isinstance(py_level, int):
            py_level = logging.INFO
        log.log(py_level, "[rule %s] %s", owner or "-", text)

        if self._action_log is not None:
            self._action_log.append(
                ActionLogEntry(ts=utc_now(), level=level, message=text, rule_id=owner)
            )
        return {"level": level, "message": text}

    async def _do_emit(self, params: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("event")
        if not name:
            raise ExecutionError("Emit action requires event name")

        data = interpolate_object(params.get("data") or {}, ctx)
        log.info("emitting event: %s %s", name, data)
        await self._bus.publish(str(name), data)
        return {"event": name, "data": data}

    def _do_http(
        self,
        params: Dict[str, Any],
        ctx: Dict[str, Any],
        owner: Optional[str],
    ) -> Dict[str, Any]:
        url = params.get("url")
        if not url:
            raise ExecutionError("HTTP action requires url")

        request = {
            "url": interpolate(str(url), ctx),
            "method": str(params.get("method") or "GET").upper(),
            "headers": dict(params.get("headers") or {}),
            "body": params.get("body"),
        }
        log.info("HTTP %s %s", request["method"], request["url"])

        # сам вызов делает внешний отправитель, ответ не ждём
        if self._http_send is not None:
            self._tasks.spawn(
                self._http_send(dict(request)),
                label=f"http {request['method']} {request['url']}",
            )
        return request

    # --------------------------------------------------------------------- #
    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
