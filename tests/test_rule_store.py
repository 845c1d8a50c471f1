import json
import logging

import pytest

from magnetboard.config.settings import Settings
from magnetboard.engine import rule_store as rule_store_module
from magnetboard.engine.rule_store import RuleStore
from magnetboard.exceptions import RuleConfigurationError
from magnetboard.models.entities import JobType, ResourceType, RowType


MINIMAL_RULES = {
    "job_types": {
        "default": {"rows": {"Crew": {"allowed_types": ["laborer", "operator"], "max_count": 3}}},
        "paving": {"rows": {"Crew": {"allowed_types": ["laborer"]}}},
    },
    "attachments": [
        {"source": "driver", "target": "truck", "max_count": 1, "required_for_finalization": True},
    ],
}


class TestDefaultRules:
    """Built-in rule set."""

    def test_operator_excavator_rule(self):
        rule = RuleStore().interaction_rule(ResourceType.OPERATOR, ResourceType.EXCAVATOR)
        assert rule.max_count == 1
        assert rule.required_for_finalization
        assert rule.safety

    def test_equipment_row_excludes_drivers(self):
        rule = RuleStore().drop_rule(RowType.EQUIPMENT)
        assert ResourceType.EXCAVATOR in rule.allowed_types
        assert ResourceType.DRIVER not in rule.allowed_types

    def test_job_type_override_falls_back_to_default(self):
        store = RuleStore()
        assert ResourceType.PAVER not in store.drop_rule(RowType.EQUIPMENT, JobType.MILLING).allowed_types
        assert store.drop_rule(RowType.TRUCKS, JobType.MILLING) == store.drop_rule(RowType.TRUCKS)

    def test_required_partners(self):
        rules = RuleStore().snapshot()
        assert rules.required_partners(ResourceType.TRUCK) == [ResourceType.DRIVER]
        assert rules.required_partners(ResourceType.LABORER) == []


class TestLoadRules:
    """Replacing the active rule set."""

    def test_load_replaces_whole_set(self):
        store = RuleStore()
        store.load_rules(MINIMAL_RULES)
        assert store.drop_rule(RowType.EQUIPMENT) is None
        assert store.drop_rule(RowType.CREW).max_count == 3
        assert store.drop_rule(RowType.CREW, JobType.PAVING).allowed_types == frozenset({ResourceType.LABORER})
        assert store.interaction_rule(ResourceType.OPERATOR, ResourceType.EXCAVATOR) is None

    def test_unknown_resource_type_fails_fast(self):
        store = RuleStore()
        before = store.snapshot()
        bad = {"attachments": [{"source": "wizard", "target": "truck"}]}
        with pytest.raises(RuleConfigurationError):
            store.load_rules(bad)
        assert store.snapshot() is before

    def test_unknown_row_fails(self):
        with pytest.raises(RuleConfigurationError):
            RuleStore({"job_types": {"default": {"rows": {"Basement": {"allowed_types": ["laborer"]}}}}})

    def test_unknown_job_type_key_fails(self):
        with pytest.raises(RuleConfigurationError):
            RuleStore({"job_types": {"tunnelling": {"rows": {}}}})

    def test_required_rule_must_be_attachable(self):
        rules = {"attachments": [
            {"source": "driver", "target": "truck", "can_attach": False, "required_for_finalization": True},
        ]}
        with pytest.raises(RuleConfigurationError):
            RuleStore(rules)

    def test_duplicate_pairs_rejected(self):
        rules = {"attachments": [
            {"source": "laborer", "target": "paver", "max_count": 1},
            {"source": "laborer", "target": "paver", "max_count": 2},
        ]}
        with pytest.raises(RuleConfigurationError):
            RuleStore(rules)

    def test_negative_max_count_rejected(self):
        with pytest.raises(RuleConfigurationError):
            RuleStore({"attachments": [{"source": "laborer", "target": "paver", "max_count": -1}]})

    def test_warnings_are_logged(self, caplog):
        rules = dict(MINIMAL_RULES, attachments=[{"source": "laborer", "target": "paver", "max_count": 9}])
        with caplog.at_level(logging.WARNING, logger="magnetboard.engine.rule_store"):
            RuleStore(rules)
        messages = [r.getMessage() for r in caplog.records]
        assert any("High max_count (9)" in m for m in messages)
        assert any("No driver rule found for trucks" in m for m in messages)
        assert any("No operator rule found for excavator" in m for m in messages)

    def test_default_rules_load_without_warnings(self, caplog):
        with caplog.at_level(logging.WARNING, logger="magnetboard.engine.rule_store"):
            RuleStore()
        assert caplog.records == []

    def test_from_settings_reads_json(self, tmp_path, monkeypatch):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(MINIMAL_RULES), encoding="utf-8")
        monkeypatch.setattr(rule_store_module, "get_settings", lambda: Settings(rules_path=str(path)))

        store = RuleStore.from_settings()

        assert store.drop_rule(RowType.CREW).max_count == 3

    def test_from_settings_prefers_explicit_settings(self, tmp_path, monkeypatch):
        """An app built with its own Settings loads that rules file, not the global one."""
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(MINIMAL_RULES), encoding="utf-8")
        monkeypatch.setattr(rule_store_module, "get_settings", lambda: Settings(rules_path=None))

        store = RuleStore.from_settings(Settings(rules_path=str(path)))

        assert store.drop_rule(RowType.CREW).max_count == 3
