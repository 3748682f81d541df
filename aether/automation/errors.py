# aether/automation/errors.py
from __future__ import annotations


class AutomationError(Exception):
    """Базовая ошибка модуля автоматики."""


class ValidationError(AutomationError, ValueError):
    """
    Некорректный ввод: нет обязательных полей, неизвестный id правила,
    неизвестный тип действия / форма условия.
    Отдаётся вызывающему синхронно.
    """


class ExecutionError(AutomationError, RuntimeError):
    """Действие упало. Ловится на уровне одного действия, соседей не трогает."""


class PersistenceError(AutomationError):
    """Не удалось прочитать/записать хранилище правил."""


class ConditionEvaluationError(AutomationError):
    """Битое условие правила при пакетной проверке."""
