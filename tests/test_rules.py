import json
from datetime import timedelta

import pytest

from decision_engine.engine.models import ReasonCode, Rule, RuleConfig
from decision_engine.engine.rules import (
    DEFAULT_RULES,
    RuleConfigStore,
    RuleEvaluator,
    validate_event,
)


@pytest.fixture
def evaluator():
    return RuleEvaluator()


@pytest.fixture
def rules():
    return RuleConfigStore()


def test_critical_event_matches_rule_and_gets_base_score(evaluator, rules, make_event, clock):
    result = evaluator.evaluate(make_event(priority_hint="critical"), rules.current(), clock.now)
    assert not result.terminal
    assert result.matched_rules == ["always_send_critical"]
    assert result.base_score == pytest.approx(0.95 + 0.20)
    assert f"{ReasonCode.RULE_MATCH}:always_send_critical" in result.reasons


def test_deny_rule_is_terminal(evaluator, rules, make_event, clock):
    result = evaluator.evaluate(make_event(event_type="promotion", priority_hint="low"),
                                rules.current(), clock.now)
    assert result.terminal
    assert result.reason_code == ReasonCode.RULE_DENY
    assert result.reasons[-1] == ReasonCode.RULE_DENY


def test_first_terminal_rule_short_circuits_lower_priority_rules(evaluator, make_event, clock):
    config = RuleConfig(version=3, rules=(
        Rule.from_dict({"name": "boost", "priority": 10, "action": "SCORE", "score": 0.5,
                        "conditions": [{"field": "event_type", "op": "eq", "value": "message"}]}),
        Rule.from_dict({"name": "deny", "priority": 20, "action": "NEVER",
                        "conditions": [{"field": "channel", "op": "eq", "value": "push"}]}),
    ))
    result = evaluator.evaluate(make_event(), config, clock.now)
    assert result.terminal
    assert result.matched_rules == ["deny"]
    assert result.rule_version == 3


def test_same_priority_rules_are_ordered_by_name():
    config = RuleConfig(version=1, rules=(
        Rule.from_dict({"name": "b", "priority": 5, "action": "SCORE", "conditions": []}),
        Rule.from_dict({"name": "a", "priority": 5, "action": "SCORE", "conditions": []}),
    ))
    assert [r.name for r in config.ordered_rules()] == ["a", "b"]


def test_evaluation_is_deterministic(evaluator, rules, make_event, clock):
    event = make_event(event_type="update", priority_hint="high")
    first = evaluator.evaluate(event, rules.current(), clock.now)
    second = evaluator.evaluate(event, rules.current(), clock.now)
    assert first == second


@pytest.mark.parametrize("overrides, fragment", [
    ({"channel": "fax"}, "unknown channel"),
    ({"priority_hint": "urgent"}, "unknown priority_hint"),
    ({"user_id": ""}, "missing user_id"),
    ({"title": None, "message": None}, "empty title and message"),
])
def test_invalid_schema_is_terminal(evaluator, rules, make_event, clock, overrides, fragment):
    event = make_event(**overrides)
    assert fragment in validate_event(event)
    result = evaluator.evaluate(event, rules.current(), clock.now)
    assert result.terminal and result.reason_code == ReasonCode.INVALID_SCHEMA


def test_expiry_before_creation_is_invalid(make_event, clock):
    event = make_event(expires_at=clock.now - timedelta(minutes=1))
    assert validate_event(event) == "expires_at is before created_at"


def test_expired_event_is_terminal(evaluator, rules, make_event, clock):
    event = make_event(expires_at=clock.now + timedelta(minutes=5))
    result = evaluator.evaluate(event, rules.current(), clock.now + timedelta(minutes=6))
    assert result.terminal and result.reason_code == ReasonCode.EXPIRED


def test_disabled_channel_is_terminal(evaluator, rules, make_event, clock):
    config = rules.publish(disabled_channels=["push"])
    result = evaluator.evaluate(make_event(), config, clock.now)
    assert result.terminal and result.reason_code == ReasonCode.CHANNEL_DISABLED


def test_disabled_rule_set_only_keeps_base_score(evaluator, rules, make_event, clock):
    config = rules.publish(enabled=False)
    result = evaluator.evaluate(make_event(event_type="promotion", priority_hint="low"), config, clock.now)
    assert not result.terminal
    assert ReasonCode.RULES_DISABLED in result.reasons
    assert result.base_score == pytest.approx(0.22)


@pytest.mark.parametrize("op, actual, expected, outcome", [
    ("eq", "a", "a", True),
    ("neq", "a", "a", False),
    ("in", "a", ["a", "b"], True),
    ("not_in", "a", ["a", "b"], False),
    ("contains", "Payment FAILED", "failed", True),
    ("exists", None, True, False),
    ("exists", None, False, True),
    ("gte", 5, 3, True),
    ("lte", "x", 3, False),
    ("regex", "a", "a", False),
])
def test_condition_operators(op, actual, expected, outcome):
    assert RuleEvaluator._check(op, actual, expected) is outcome


def test_metadata_fields_can_be_matched(evaluator, make_event, clock):
    config = RuleConfig(version=1, rules=(
        Rule.from_dict({"name": "vip", "action": "SCORE", "score": 0.3,
                        "conditions": [{"field": "tier", "op": "eq", "value": "vip"}]}),
    ))
    result = evaluator.evaluate(make_event(metadata={"tier": "vip"}), config, clock.now)
    assert result.matched_rules == ["vip"]


def test_publish_is_copy_on_write(rules):
    before = rules.current()
    after = rules.add_rule({
        "name": "mute_marketing", "priority": 70, "action": "NEVER",
        "conditions": [{"field": "source", "op": "eq", "value": "marketing"}],
    })
    assert after.version == before.version + 1
    assert len(after.rules) == len(before.rules) + 1
    assert len(before.rules) == len(DEFAULT_RULES)
    assert rules.current() is after


def test_decision_in_flight_keeps_its_snapshot(evaluator, rules, make_event, clock):
    snapshot = rules.current()
    rules.publish(rules=[{"name": "deny_all", "action": "NEVER", "conditions": []}])
    result = evaluator.evaluate(make_event(), snapshot, clock.now)
    assert not result.terminal
    assert result.rule_version == snapshot.version


def test_unknown_rule_action_is_rejected(rules):
    with pytest.raises(ValueError):
        rules.add_rule({"name": "bad", "action": "LATER", "conditions": []})


def test_rules_file_is_appended_to_defaults(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"rules": [
        {"name": "quiet_newsletters", "action": "NEVER",
         "conditions": [{"field": "event_type", "op": "eq", "value": "newsletter"}]},
    ]}))
    store = RuleConfigStore.with_rules_file(str(path))
    names = {r.name for r in store.current().rules}
    assert "quiet_newsletters" in names
    assert "always_send_critical" in names
