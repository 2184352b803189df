"""Unit tests for rule matching."""

from datetime import UTC, datetime, timedelta

import pytest
from doubles import make_rule

from mailwatch.matching import PatternMatcher, ScoredRule, extract_address

SENDER = "Acme Bank <alerts@acmebank.com>"
SUBJECT = "Transaction alert: card ending 1234"
BODY = "A purchase of USD 42.50 at Corner Grocer"


@pytest.fixture
def matcher():
    return PatternMatcher()


class TestExtractAddress:
    """Tests for extract_address."""

    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Acme Bank <Alerts@AcmeBank.com>", "alerts@acmebank.com"),
            ("alerts@acmebank.com", "alerts@acmebank.com"),
            ("  no address here ", "no address here"),
        ],
    )
    def test_extract_address(self, header, expected):
        assert extract_address(header) == expected


class TestScore:
    """Tests for PatternMatcher.score."""

    def test_exact_sender_with_subject_and_body(self, matcher):
        rule = make_rule(priority=3)
        assert matcher.score(rule, SENDER, SUBJECT, BODY) == 3 + 10 + 2 + 1

    def test_partial_sender(self, matcher):
        rule = make_rule(from_addresses=["acmebank.com"], subject_patterns=[], body_keywords=[])
        assert matcher.score(rule, SENDER, SUBJECT, BODY) == 5

    def test_sender_mismatch(self, matcher):
        rule = make_rule(from_addresses=["alerts@otherbank.com"])
        assert matcher.score(rule, SENDER, SUBJECT, BODY) is None

    def test_empty_sender(self, matcher):
        assert matcher.score(make_rule(), "", SUBJECT, BODY) is None

    def test_declared_subject_pattern_must_hit(self, matcher):
        rule = make_rule(subject_patterns=[r"statement ready"])
        assert matcher.score(rule, SENDER, SUBJECT, BODY) is None

    def test_declared_keywords_must_hit(self, matcher):
        rule = make_rule(body_keywords=["refund"])
        assert matcher.score(rule, SENDER, SUBJECT, BODY) is None

    def test_each_hit_counts(self, matcher):
        rule = make_rule(
            subject_patterns=[r"transaction", r"card ending \d{4}"],
            body_keywords=["purchase", "GROCER", "absent"],
        )
        assert matcher.score(rule, SENDER, SUBJECT, BODY) == 10 + 2 * 2 + 2

    def test_invalid_pattern_skips_rule(self, matcher):
        rule = make_rule(subject_patterns=["(unclosed"])
        assert matcher.score(rule, SENDER, SUBJECT, BODY) is None

    def test_non_positive_total(self, matcher):
        rule = make_rule(priority=-20)
        assert matcher.score(rule, SENDER, SUBJECT, BODY) is None


class TestMatch:
    """Tests for PatternMatcher.match and tie-breaking."""

    def test_no_rules(self, matcher):
        outcome = matcher.match(SENDER, SUBJECT, BODY, [])
        assert not outcome.matched
        assert outcome.rule is None

    def test_inactive_rules_ignored(self, matcher):
        outcome = matcher.match(SENDER, SUBJECT, BODY, [make_rule(is_active=False)])
        assert not outcome.matched

    def test_highest_score_wins(self, matcher):
        weak = make_rule(name="weak", id=1, from_addresses=["acmebank.com"])
        strong = make_rule(name="strong", id=2)
        outcome = matcher.match(SENDER, SUBJECT, BODY, [weak, strong])
        assert outcome.rule is strong
        assert outcome.score == 13
        assert outcome.candidates == 2

    def test_equal_scores_prefer_higher_priority(self, matcher):
        # 5 + exact sender 10 == 10 + partial sender 5
        low = make_rule(
            name="low", id=1, priority=5, subject_patterns=[], body_keywords=[]
        )
        high = make_rule(
            name="high",
            id=2,
            priority=10,
            from_addresses=["acmebank.com"],
            subject_patterns=[],
            body_keywords=[],
        )

        outcome = matcher.match(SENDER, SUBJECT, BODY, [low, high])

        assert outcome.score == 15
        assert outcome.rule is high

    def test_select_prefers_priority_on_tied_score(self):
        low = ScoredRule(make_rule(name="low", id=1, priority=5), score=12, position=0)
        high = ScoredRule(make_rule(name="high", id=2, priority=10), score=12, position=1)
        assert PatternMatcher.select([low, high]) is high
        assert PatternMatcher.select([high, low]) is high

    def test_select_prefers_earlier_creation_then_id(self):
        created = datetime(2026, 1, 1, tzinfo=UTC)
        older = ScoredRule(
            make_rule(name="older", id=9, created_at=created), score=12, position=1
        )
        newer = ScoredRule(
            make_rule(name="newer", id=3, created_at=created + timedelta(days=1)),
            score=12,
            position=0,
        )
        undated = ScoredRule(make_rule(name="undated", id=1), score=12, position=2)
        assert PatternMatcher.select([newer, undated, older]) is older

        same_a = ScoredRule(make_rule(name="a", id=7, created_at=created), score=12, position=0)
        same_b = ScoredRule(make_rule(name="b", id=4, created_at=created), score=12, position=1)
        assert PatternMatcher.select([same_a, same_b]) is same_b

    def test_select_empty(self):
        assert PatternMatcher.select([]) is None
