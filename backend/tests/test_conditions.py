"""Tests for authority condition evaluation: pure, total, fail-closed bounds."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from steward.domains.authority.conditions import evaluate_conditions
from steward.domains.authority.schemas import ActionContext, AuthorityConditions


def _ctx(**kwargs) -> ActionContext:
    kwargs.setdefault("now", datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc))
    return ActionContext(**kwargs)


def _conds(*items) -> AuthorityConditions:
    return AuthorityConditions(conditions=list(items))


class TestConditionParsing:
    """Tagged variants are discriminated by kind."""

    def test_round_trip_through_json(self):
        raw = [
            {"kind": "max_amount", "value": 100},
            {"kind": "time_window", "start": "09:00", "end": "17:30"},
            {"kind": "vip_only"},
        ]
        parsed = AuthorityConditions.from_json(raw)
        assert [c.kind for c in parsed.conditions] == ["max_amount", "time_window", "vip_only"]
        assert parsed.to_json()[0] == {"kind": "max_amount", "value": 100.0, "field": "amount"}

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            AuthorityConditions.from_json([{"kind": "run_python", "code": "import os"}])

    def test_bad_time_format_rejected(self):
        with pytest.raises(ValidationError):
            AuthorityConditions.from_json([{"kind": "time_window", "start": "9am", "end": "17:00"}])

    def test_none_means_no_conditions(self):
        assert AuthorityConditions.from_json(None) is None


class TestEvaluate:

    def test_no_conditions_met(self):
        assert evaluate_conditions(None, _ctx()).met
        assert evaluate_conditions(_conds(), _ctx()).met

    def test_max_amount_inclusive(self):
        conds = _conds({"kind": "max_amount", "value": 100})
        assert evaluate_conditions(conds, _ctx(amount=100)).met
        result = evaluate_conditions(conds, _ctx(amount=100.01))
        assert not result.met
        assert "exceeds" in result.reason

    def test_max_amount_fails_closed_without_amount(self):
        result = evaluate_conditions(_conds({"kind": "max_amount", "value": 100}), _ctx())
        assert not result.met

    def test_max_amount_reads_custom_field(self):
        conds = _conds({"kind": "max_amount", "value": 50, "field": "invoice_total"})
        assert evaluate_conditions(conds, _ctx(fields={"invoice_total": 20})).met
        assert not evaluate_conditions(conds, _ctx(fields={"invoice_total": "lots"})).met

    def test_time_window(self):
        conds = _conds({"kind": "time_window", "start": "09:00", "end": "17:00"})
        assert evaluate_conditions(conds, _ctx()).met
        late = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)
        assert not evaluate_conditions(conds, _ctx(now=late)).met

    def test_time_window_wraps_midnight(self):
        conds = _conds({"kind": "time_window", "start": "22:00", "end": "06:00"})
        assert evaluate_conditions(conds, _ctx(now=datetime(2026, 3, 2, 23, 15, tzinfo=timezone.utc))).met
        assert evaluate_conditions(conds, _ctx(now=datetime(2026, 3, 3, 5, 59, tzinfo=timezone.utc))).met
        assert not evaluate_conditions(conds, _ctx(now=datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc))).met

    def test_time_window_uses_timezone(self):
        # 10:30 UTC is 19:30 in Tokyo
        conds = _conds({"kind": "time_window", "start": "09:00", "end": "17:00", "timezone": "Asia/Tokyo"})
        assert not evaluate_conditions(conds, _ctx()).met

    def test_unknown_timezone_fails(self):
        conds = _conds({"kind": "time_window", "start": "00:00", "end": "23:59", "timezone": "Mars/Olympus"})
        result = evaluate_conditions(conds, _ctx())
        assert not result.met
        assert "timezone" in result.reason

    def test_allowed_domains_matches_subdomains(self):
        conds = _conds({"kind": "allowed_domains", "domains": ["example.com"]})
        assert evaluate_conditions(conds, _ctx(sender_domain="example.com")).met
        assert evaluate_conditions(conds, _ctx(sender_domain="mail.example.com")).met
        assert not evaluate_conditions(conds, _ctx(sender_domain="notexample.com")).met

    def test_domain_filters_skip_without_sender(self):
        conds = _conds(
            {"kind": "allowed_domains", "domains": ["example.com"]},
            {"kind": "blocked_domains", "domains": ["spam.io"]},
        )
        assert evaluate_conditions(conds, _ctx()).met

    def test_blocked_domains(self):
        conds = _conds({"kind": "blocked_domains", "domains": ["spam.io"]})
        result = evaluate_conditions(conds, _ctx(sender_domain="news.spam.io"))
        assert not result.met
        assert "blocked" in result.reason

    def test_vip_only(self):
        conds = _conds({"kind": "vip_only"})
        assert evaluate_conditions(conds, _ctx(is_vip=True)).met
        assert not evaluate_conditions(conds, _ctx(is_vip=False)).met
        assert not evaluate_conditions(conds, _ctx()).met

    def test_min_confidence(self):
        conds = _conds({"kind": "min_confidence", "value": 0.8})
        assert evaluate_conditions(conds, _ctx(confidence=0.8)).met
        assert not evaluate_conditions(conds, _ctx(confidence=0.5)).met
        assert not evaluate_conditions(conds, _ctx()).met

    @pytest.mark.parametrize("operator,value,actual,expected", [
        ("equals", "internal", "internal", True),
        ("equals", "internal", "external", False),
        ("contains", "invoice", "monthly invoice #3", True),
        ("matches", r"^INV-\d+$", "INV-042", True),
        ("matches", r"^INV-\d+$", "PO-042", False),
        ("gt", 3, 5, True),
        ("lt", 3, 5, False),
    ])
    def test_field_rule(self, operator, value, actual, expected):
        conds = _conds({"kind": "field_rule", "field": "tag", "operator": operator, "value": value})
        assert evaluate_conditions(conds, _ctx(fields={"tag": actual})).met is expected

    def test_field_rule_bad_pattern_fails_without_raising(self):
        conds = _conds({"kind": "field_rule", "field": "tag", "operator": "matches", "value": "(["})
        assert not evaluate_conditions(conds, _ctx(fields={"tag": "x"})).met

    def test_field_rule_skipped_when_field_missing(self):
        conds = _conds({"kind": "field_rule", "field": "tag", "operator": "equals", "value": "x"})
        assert evaluate_conditions(conds, _ctx()).met

    def test_first_failure_reported(self):
        conds = _conds(
            {"kind": "max_amount", "value": 10},
            {"kind": "vip_only"},
        )
        result = evaluate_conditions(conds, _ctx(amount=50, is_vip=False))
        assert not result.met
        assert "ceiling" in result.reason
