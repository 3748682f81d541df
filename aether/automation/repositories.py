# aether/automation/repositories.py
from __future__ import annotations

import logging
import shutil
import time
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Union

from .errors import PersistenceError, ValidationError
from .storage import (
    ActionLogStorage,
    RuleStorage,
    dump_rules_document,
    parse_rules_document,
)
from .types import ActionLogEntry, Rule

log = logging.getLogger("automation.storage")


# ======================================================================
# 1. IN-MEMORY ХРАНИЛИЩЕ ПРАВИЛ
# ======================================================================

class InMemoryRuleStorage(RuleStorage):
    """
    Хранилище правил в памяти.
    Подходит для unit-тестов и для запуска без диска.
    Хранит снимки (dict), а не живые объекты менеджера.
    """

    def __init__(self, rules: Optional[List[Rule]] = None) -> None:
        self._docs = [r.to_dict() for r in (rules or [])]
        self.save_count = 0

    def load_rules(self) -> List[Rule]:
        return [Rule.from_dict(d) for d in self._docs]

    def save_rules(self, rules: List[Rule]) -> bool:
        self._docs = [r.to_dict() for r in rules]
        self.save_count += 1
        return True


# ======================================================================
# 2. JSON-ФАЙЛ
# ======================================================================

class JsonFileRuleStorage(RuleStorage):
    """
    Правила в одном JSON-файле (по умолчанию data/automation-rules.json).

      - файла нет → пустой список;
      - файл битый → PersistenceError (менеджер решает, что с этим делать);
      - запись атомарная: пишем .tmp и подменяем;
      - бэкапы с ротацией по create_backup().
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        backups_dir: Union[str, Path, None] = None,
        backups_keep: int = 10,
    ) -> None:
        self.path = Path(path)
        self.backups_dir = Path(backups_dir) if backups_dir else self.path.parent / "backups"
        self.backups_keep = int(backups_keep or 0)

    # ------------------------------------------------------------------
    def load_rules(self) -> List[Rule]:
        if not self.path.exists():
            log.info("no rules file at %s, starting with empty rules", self.path)
            return []

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"cannot read {self.path}: {exc}") from exc

        if not text.strip():
            return []

        try:
            rules = parse_rules_document(text)
        except ValidationError as exc:
            raise PersistenceError(f"cannot parse {self.path}: {exc}") from exc

        log.info("loaded %d rules from %s", len(rules), self.path)
        return rules

    def save_rules(self, rules: List[Rule]) -> bool:
        try:
            payload = dump_rules_document(rules)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            log.error("error saving rules to %s: %s", self.path, exc)
            return False

        log.debug("saved %d rules to %s", len(rules), self.path)
        return True

    # ------------------------------------------------------------------
    def export_rules(self, rules: List[Rule]) -> str:
        return dump_rules_document(rules, stamp_key="exportedAt")

    def import_rules(self, text: str) -> List[Rule]:
        return parse_rules_document(text)

    def create_backup(self) -> Optional[Path]:
        """
        Копия текущего файла в backups_dir + ротация (оставляем последние N).
        Вернёт путь к бэкапу или None, если копировать нечего/не вышло.
        """
        if not self.path.exists():
            return None

        ts = time.strftime("%Y%m%d-%H%M%S")
        # пример: automation-rules-20250918-153012.json.bak
        backup = self.backups_dir / f"{self.path.stem}-{ts}{self.path.suffix}.bak"
        try:
            self.backups_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.path, backup)
        except OSError as exc:
            log.error("error creating backup of %s: %s", self.path, exc)
            return None

        if self.backups_keep > 0:
            patt = f"{self.path.stem}-*{self.path.suffix}.bak"
            files = sorted(self.backups_dir.glob(patt))
            extra = len(files) - self.backups_keep
            for old in files[:max(0, extra)]:
                try:
                    old.unlink()
                except OSError as exc:
                    log.warning("cannot remove old backup %s: %s", old, exc)

        log.info("backup created: %s", backup)
        return backup


# ======================================================================
# 3. IN-MEMORY ЖУРНАЛ LOG-ДЕЙСТВИЙ
# ======================================================================

class InMemoryActionLogStorage(ActionLogStorage):
    """
    Журнал log-действий в памяти.
    Хранит последние N записей (по умолчанию 1000) в deque.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._entries: Deque[ActionLogEntry] = deque(maxlen=max_entries)

    def append(self, entry: ActionLogEntry) -> None:
        self._entries.appendleft(entry)  # новые в начало

    def list_recent(
        self,
        limit: int = 100,
        rule_id: Optional[str] = None,
    ) -> List[ActionLogEntry]:
        if rule_id is None:
            return list(self._entries)[:limit]

        filtered = [e for e in self._entries if e.rule_id == rule_id]
        return filtered[:limit]

    def __len__(self) -> int:
        return len(self._entries)
