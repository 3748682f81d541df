# aether/automation/storage.py
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError
from .types import ActionLogEntry, Rule, utc_now

FILE_FORMAT_VERSION = "1.0"


# ======================================================================
# 1. ХРАНИЛИЩЕ ПРАВИЛ
# ======================================================================

class RuleStorage(ABC):
    """
    Абстрактное хранилище правил.
    Контракт простой: загрузить всё / сохранить всё.
    Реализации:
      - in-memory (для тестов)
      - JSON-файл (по умолчанию на стенде)
    """

    @abstractmethod
    def load_rules(self) -> List[Rule]:
        """Вернёт все правила. Если хранилища ещё нет: пустой список, не ошибка."""
        raise NotImplementedError

    @abstractmethod
    def save_rules(self, rules: List[Rule]) -> bool:
        """Сохранить все правила. Ошибки логируются, наружу не летят."""
        raise NotImplementedError


# ======================================================================
# 2. ХРАНИЛИЩЕ ЖУРНАЛА LOG-ДЕЙСТВИЙ
# ======================================================================

class ActionLogStorage(ABC):
    """
    Журнал log-действий автоматики.
    Движок складывает записи, UI/внешний код: читает.
    """

    @abstractmethod
    def append(self, entry: ActionLogEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_recent(
        self,
        limit: int = 100,
        rule_id: Optional[str] = None,
    ) -> List[ActionLogEntry]:
        """Последние записи, можно отфильтровать по rule_id."""
        raise NotImplementedError


# ======================================================================
# 3. ФОРМАТ ФАЙЛА
# ======================================================================

def dump_rules_document(rules: Iterable[Rule], *, stamp_key: str = "savedAt") -> str:
    """
    {
      "version": "1.0",
      "savedAt": "...",
      "rules": [ ... ]
    }
    """
    doc: Dict[str, Any] = {
        "version": FILE_FORMAT_VERSION,
        stamp_key: utc_now().isoformat(),
        "rules": [r.to_dict() for r in rules],
    }
    return json.dumps(doc, ensure_ascii=False, indent=2)


def parse_rules_document(text: str) -> List[Rule]:
    """Разбор JSON-документа с правилами. Бросает ValidationError."""
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid JSON: {exc}") from exc

    if isinstance(data, list):
        # голый список правил тоже принимаем
        items = data
    elif isinstance(data, dict):
        items = data.get("rules") or []
    else:
        raise ValidationError("Rules document must be an object or a list")

    if not isinstance(items, list):
        raise ValidationError("'rules' must be a list")

    rules: List[Rule] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        try:
            rules.append(Rule.from_dict(item))
        except ValidationError as exc:
            raise ValidationError(f"rules[{idx}]: {exc}") from exc
    return rules
