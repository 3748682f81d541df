# aether/automation/tasks.py
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

log = logging.getLogger("automation")

# ключ группы для задач, не привязанных к правилу (сохранения, http)
NO_OWNER = ""


class BackgroundTasks:
    """
    Реестр фоновых задач «запустил и забыл»:
      - отложенные возвраты пинов (по владельцу-правилу, чтобы их можно было снять);
      - сохранения правил на диск;
      - внешние http-вызовы.

    Никто эти задачи не ждёт, поэтому ошибки складываются сюда:
    в лог и в последние N записей (см. last_errors()).
    """

    def __init__(self, max_errors: int = 100) -> None:
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._errors: Deque[Dict[str, Any]] = deque(maxlen=max_errors)
        self._error_count = 0

    # ------------------------------------------------------------------
    def spawn(
        self,
        coro: Awaitable[Any],
        *,
        owner: Optional[str] = None,
        label: str = "",
    ) -> asyncio.Task:
        key = owner or NO_OWNER
        task = asyncio.ensure_future(coro)
        self._tasks.setdefault(key, set()).add(task)
        task.add_done_callback(lambda t: self._on_done(key, label, t))
        return task

    def call_later(
        self,
        delay_s: float,
        fn: Callable[[], Awaitable[Any]],
        *,
        owner: Optional[str] = None,
        label: str = "",
    ) -> asyncio.Task:
        """Выполнить fn() через delay_s секунд. Таймер снимается через cancel(owner)."""
        return self.spawn(self._delayed(delay_s, fn), owner=owner, label=label)

    @staticmethod
    async def _delayed(delay_s: float, fn: Callable[[], Awaitable[Any]]) -> Any:
        await asyncio.sleep(delay_s)
        return await fn()

    # ------------------------------------------------------------------
    def cancel(self, owner: str) -> int:
        """Снять все незавершённые задачи владельца. Вернёт, сколько сняли."""
        tasks = self._tasks.pop(owner or NO_OWNER, set())
        cancelled = 0
        for task in tasks:
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            log.debug("cancelled %d pending task(s) of %r", cancelled, owner)
        return cancelled

    def cancel_owners(self, *, keep: Optional[Set[str]] = None) -> int:
        """Снять задачи всех владельцев, кроме keep."""
        keep = keep or set()
        total = 0
        for owner in list(self._tasks):
            if owner in keep:
                continue
            total += self.cancel(owner)
        return total

    def pending(self, owner: Optional[str] = None) -> int:
        if owner is None:
            return sum(
                1 for tasks in self._tasks.values() for t in tasks if not t.done()
            )
        return sum(1 for t in self._tasks.get(owner, ()) if not t.done())

    async def join(self, owner: Optional[str] = None) -> None:
        """Дождаться задач (всех или одного владельца). Ошибки уже ушли в лог."""
        if owner is None:
            tasks: List[asyncio.Task] = [t for ts in self._tasks.values() for t in ts]
        else:
            tasks = list(self._tasks.get(owner, ()))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    def last_errors(self, limit: int = 20) -> List[Dict[str, Any]]:
        limit = int(limit)
        if limit <= 0:
            return []
        return list(self._errors)[-limit:]

    @property
    def error_count(self) -> int:
        return self._error_count

    def _on_done(self, owner: str, label: str, task: asyncio.Task) -> None:
        group = self._tasks.get(owner)
        if group is not None:
            group.discard(task)
            if not group:
                self._tasks.pop(owner, None)

        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        self._error_count += 1
        self._errors.append({
            "ts": time.time(),
            "owner": owner,
            "label": label,
            "error": str(exc),
        })
        log.error("background task %s (owner=%r) failed: %s", label or "?", owner, exc)
