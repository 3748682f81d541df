# aether/core/validate_cfg.py
from __future__ import annotations
from typing import Dict, Any, Optional

ALLOWED_TRIGGER_ORDERS = {"insertion", "priority"}
ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    try:
        iv = int(v)
    except Exception:
        raise ValueError(f"{name}: ожидается целое, получено {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: должно быть ≥ {min_} (получено {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: должно быть ≤ {max_} (получено {iv})")
    return iv


def _as_float(v, name, min_: Optional[float] = None) -> float:
    try:
        fv = float(v)
    except Exception:
        raise ValueError(f"{name}: ожидается число, получено {v!r}")
    if min_ is not None and fv < min_:
        raise ValueError(f"{name}: должно быть ≥ {min_} (получено {fv})")
    return fv


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Бросает ValueError с понятным текстом, если конфиг некорректен."""
    if not isinstance(cfg, dict):
        raise ValueError("корневой YAML должен быть объектом")

    # ─── automation ───
    auto = cfg.get("automation", {})
    if auto is None:
        return
    if not isinstance(auto, dict):
        raise ValueError("automation: должен быть объектом")

    for key in ("rules_file", "seed_rules_file", "backups_dir"):
        if key in auto and not (auto[key] is None or isinstance(auto[key], str)):
            raise ValueError(f"automation.{key}: должен быть строкой")

    if "scheduler_interval_s" in auto:
        iv = _as_float(auto["scheduler_interval_s"], "automation.scheduler_interval_s", 0.1)
        # тик длиннее минуты может перепрыгнуть через минуту расписания
        if iv > 60:
            raise ValueError("automation.scheduler_interval_s: должно быть ≤ 60")
    if "history_limit" in auto:
        _as_int(auto["history_limit"], "automation.history_limit", 1)
    if "trigger_queue_size" in auto:
        _as_int(auto["trigger_queue_size"], "automation.trigger_queue_size", 1)
    if "action_log_size" in auto:
        _as_int(auto["action_log_size"], "automation.action_log_size", 1)
    if "http_timeout_s" in auto:
        _as_float(auto["http_timeout_s"], "automation.http_timeout_s", 0.1)
    if "backups_keep" in auto:
        _as_int(auto["backups_keep"], "automation.backups_keep", 0)

    if "trigger_order" in auto:
        order = str(auto["trigger_order"]).lower()
        if order not in ALLOWED_TRIGGER_ORDERS:
            raise ValueError(
                f"automation.trigger_order: одно из {sorted(ALLOWED_TRIGGER_ORDERS)}"
            )

    if "log_level" in auto:
        if str(auto["log_level"]).upper() not in ALLOWED_LOG_LEVELS:
            raise ValueError(f"automation.log_level: одно из {sorted(ALLOWED_LOG_LEVELS)}")
