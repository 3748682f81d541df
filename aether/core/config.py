# aether/core/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

from aether.core.validate_cfg import validate_cfg


class Settings(BaseSettings):
    # populate_by_name: Settings(rules_file=...) работает наравне с RULES_FILE
    model_config = SettingsConfigDict(populate_by_name=True, validate_assignment=True, extra="ignore")

    # путь к основному YAML (можно переопределить переменной окружения CONFIG_FILE)
    config_file: str = Field(default="config.yaml", validation_alias="CONFIG_FILE")

    # где лежат правила (JSON, формат {version, savedAt, rules})
    rules_file: str = Field(default="data/automation-rules.json", validation_alias="RULES_FILE")

    # YAML с начальными правилами: грузится, только если основное хранилище пустое
    seed_rules_file: Optional[str] = None

    # ───────── автоматика ─────────
    # тик планировщика; меньше минуты, чтобы не перепрыгнуть минуту расписания
    scheduler_interval_s: float = 30.0
    history_limit: int = 1000
    trigger_queue_size: int = 100
    # порядок исполнения совпавших правил на живом событии: insertion | priority
    trigger_order: str = "insertion"
    action_log_size: int = 1000
    http_timeout_s: float = 10.0
    log_level: str = "INFO"

    # куда и сколько бэкапов хранить
    backups_dir: str = "./data/backups"
    backups_keep: int = 10

    # внутреннее хранилище загруженного YAML
    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Path | None = PrivateAttr(default=None)

    # ───────── пути ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    @property
    def rules_path(self) -> Path:
        p = Path(self.rules_file)
        if not p.is_absolute():
            p = Path.cwd() / p
        return p

    # ───────── YAML cfg ─────────
    @property
    def cfg(self) -> Dict[str, Any]:
        return self._cfg

    def load_yaml_config(self) -> None:
        """
        Читает config.yaml (если он есть) и накладывает секцию automation
        поверх значений по умолчанию / из окружения.
        """
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                self._cfg = yaml.safe_load(f) or {}
                validate_cfg(self._cfg)  # выбросит ValueError, если что-то не так
        else:
            self._cfg = {}
        self.apply_section(self.automation)

    def apply_section(self, section: Dict[str, Any]) -> None:
        for key, value in (section or {}).items():
            if key in type(self).model_fields and key != "config_file":
                setattr(self, key, value)
        self.trigger_order = str(self.trigger_order).lower()
        self.log_level = str(self.log_level).upper()

    # ───────── удобные секции ─────────
    @property
    def automation(self) -> Dict[str, Any]:
        return self._cfg.get("automation") or {}


settings = Settings()
