"""Tests for rule storages and the rules file format."""

import json
from datetime import timezone

import pytest

from aether.automation.errors import PersistenceError, ValidationError
from aether.automation.repositories import (
    InMemoryActionLogStorage,
    InMemoryRuleStorage,
    JsonFileRuleStorage,
)
from aether.automation.storage import dump_rules_document, parse_rules_document
from aether.automation.types import ActionLogEntry, Rule, utc_now


def sample_rule(rule_id="door"):
    return Rule.from_dict({
        "id": rule_id,
        "name": "Door",
        "priority": 100,
        "conditions": {"all": [{"event": "pin_change", "pin": 17, "value": 1}]},
        "actions": [{"type": "gpio", "params": {"pin": 5, "value": 1, "duration": 300}}],
    })


class TestDocument:
    """Tests for the JSON document format."""

    def test_dump_has_version_and_stamp(self):
        doc = json.loads(dump_rules_document([sample_rule()]))
        assert doc["version"] == "1.0"
        assert "savedAt" in doc
        assert doc["rules"][0]["executionCount"] == 0

    def test_invalid_json(self):
        with pytest.raises(ValidationError, match="^Invalid JSON"):
            parse_rules_document("{not json")

    def test_bare_list_accepted(self):
        rules = parse_rules_document(json.dumps([sample_rule().to_dict()]))
        assert [r.id for r in rules] == ["door"]

    def test_legacy_stats_and_epoch_timestamps(self):
        raw = {
            "id": "old",
            "conditions": {"all": []},
            "actions": [],
            "createdAt": 1700000000000,
            "stats": {"executions": 4, "errors": 1},
        }
        rule = parse_rules_document(json.dumps({"rules": [raw]}))[0]

        assert rule.execution_count == 4
        assert rule.error_count == 1
        assert rule.created_at.tzinfo is timezone.utc
        assert rule.created_at.year == 2023


class TestJsonFileRuleStorage:
    """Tests for the JSON file storage."""

    def test_missing_file_is_empty(self, tmp_path):
        assert JsonFileRuleStorage(tmp_path / "rules.json").load_rules() == []

    def test_empty_file_is_empty(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("  \n", encoding="utf-8")
        assert JsonFileRuleStorage(path).load_rules() == []

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{broken", encoding="utf-8")
        with pytest.raises(PersistenceError):
            JsonFileRuleStorage(path).load_rules()

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "nested" / "rules.json"
        storage = JsonFileRuleStorage(path)
        rule = sample_rule()
        rule.execution_count = 3

        assert storage.save_rules([rule]) is True
        assert not path.with_suffix(".json.tmp").exists()

        loaded = storage.load_rules()[0]
        assert loaded.to_dict() == rule.to_dict()

    def test_save_failure_returns_false(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        storage = JsonFileRuleStorage(blocker / "rules.json")

        assert storage.save_rules([sample_rule()]) is False

    def test_backup_rotation(self, tmp_path):
        path = tmp_path / "rules.json"
        backups = tmp_path / "backups"
        backups.mkdir()
        for stamp in ("20200101-000000", "20200102-000000", "20200103-000000"):
            (backups / f"rules-{stamp}.json.bak").write_text("{}", encoding="utf-8")

        storage = JsonFileRuleStorage(path, backups_dir=backups, backups_keep=2)
        assert storage.create_backup() is None

        storage.save_rules([sample_rule()])
        backup = storage.create_backup()

        assert backup is not None and backup.exists()
        remaining = sorted(p.name for p in backups.glob("*.bak"))
        assert len(remaining) == 2
        assert backup.name in remaining
        assert "rules-20200101-000000.json.bak" not in remaining

    def test_export_import(self, tmp_path):
        storage = JsonFileRuleStorage(tmp_path / "rules.json")
        text = storage.export_rules([sample_rule("a"), sample_rule("b")])

        assert "exportedAt" in json.loads(text)
        assert [r.id for r in storage.import_rules(text)] == ["a", "b"]


class TestInMemory:
    """Tests for in-memory storages."""

    def test_rules_are_snapshots(self):
        storage = InMemoryRuleStorage()
        rule = sample_rule()
        storage.save_rules([rule])
        rule.name = "changed later"

        assert storage.load_rules()[0].name == "Door"
        assert storage.save_count == 1

    def test_action_log_newest_first_and_filtered(self):
        log = InMemoryActionLogStorage(max_entries=3)
        for i, rule_id in enumerate(["a", "b", "a", "b"]):
            log.append(ActionLogEntry(ts=utc_now(), level="info", message=f"m{i}", rule_id=rule_id))

        assert len(log) == 3
        assert [e.message for e in log.list_recent()] == ["m3", "m2", "m1"]
        assert [e.message for e in log.list_recent(rule_id="a")] == ["m2"]
        assert [e.message for e in log.list_recent(limit=1)] == ["m3"]


class TestBrokenStoredRules:
    """Tests for stored rules whose fields cannot be converted."""

    @pytest.mark.parametrize("raw", [
        {"id": "a", "priority": "high", "conditions": {"all": []}, "actions": []},
        {"id": "a", "conditions": {"all": []}, "actions": ["oops"]},
        {"id": "a", "conditions": {"all": []}, "actions": [], "stats": ["x"]},
    ])
    def test_parse_raises_validation_error_with_index(self, raw):
        text = json.dumps({"rules": [sample_rule("ok").to_dict(), raw]})
        with pytest.raises(ValidationError, match=r"rules\[1\]"):
            parse_rules_document(text)

    def test_file_storage_raises_persistence_error(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps({"rules": [{"id": "a", "priority": "high", "conditions": {}, "actions": []}]}),
            encoding="utf-8",
        )
        with pytest.raises(PersistenceError):
            JsonFileRuleStorage(path).load_rules()

    def test_rule_from_dict_raises_validation_error(self):
        with pytest.raises(ValidationError, match="'r1'"):
            Rule.from_dict({"id": "r1", "executionCount": "many"})
        with pytest.raises(ValidationError):
            Rule.from_dict(["not", "a", "dict"])
