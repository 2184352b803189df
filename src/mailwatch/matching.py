"""Rule matching: pick the tenant rule that best fits an incoming e-mail.

Scoring for a rule whose sender list matches the From header:

    priority
    + 10 for an exact sender match, or 5 for a partial one
    + 2 per matching subject pattern
    + 1 per body keyword present

Rules that declare subject patterns or body keywords must hit at least
one of each they declare. Scores of zero or less never match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache

from mailwatch.logging import get_logger
from mailwatch.models import MatchRule

log = get_logger("mailwatch.matching")

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")

EXACT_SENDER_POINTS = 10
PARTIAL_SENDER_POINTS = 5
SUBJECT_HIT_POINTS = 2
BODY_HIT_POINTS = 1

_FAR_FUTURE = datetime.max


def _naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return _FAR_FUTURE
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.replace(tzinfo=None)


@lru_cache(maxsize=512)
def _compile_patterns(patterns: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def extract_address(header: str) -> str:
    """Bare lower-cased address from ``Name <addr>``, or the header itself."""
    match = EMAIL_PATTERN.search(header)
    return (match.group(0) if match else header).strip().lower()


@dataclass(frozen=True)
class MatchOutcome:
    """Result of matching one e-mail against a tenant's rules."""

    rule: MatchRule | None = None
    score: int = 0
    candidates: int = 0

    @property
    def matched(self) -> bool:
        return self.rule is not None


@dataclass(frozen=True)
class ScoredRule:
    rule: MatchRule
    score: int
    position: int

    def sort_key(self) -> tuple[int, int, datetime, int, int]:
        created = _naive_utc(self.rule.created_at)
        rule_id = self.rule.id if self.rule.id is not None else self.position
        return (-self.score, -self.rule.priority, created, rule_id, self.position)


class PatternMatcher:
    """Scores active rules against sender, subject, and body."""

    def match(
        self,
        from_address: str,
        subject: str,
        body: str,
        rules: list[MatchRule],
    ) -> MatchOutcome:
        scored: list[ScoredRule] = []
        for position, rule in enumerate(rules):
            if not rule.is_active:
                continue
            score = self.score(rule, from_address, subject, body)
            if score is not None:
                scored.append(ScoredRule(rule=rule, score=score, position=position))

        best = self.select(scored)
        if best is None:
            log.debug("no_rule_matched", sender=from_address, rules=len(rules))
            return MatchOutcome(candidates=0)
        log.debug(
            "rule_matched",
            rule_id=best.rule.id,
            rule_name=best.rule.name,
            score=best.score,
            candidates=len(scored),
        )
        return MatchOutcome(rule=best.rule, score=best.score, candidates=len(scored))

    @staticmethod
    def select(scored: list[ScoredRule]) -> ScoredRule | None:
        """Highest score; ties go to higher priority, then earlier creation."""
        if not scored:
            return None
        return min(scored, key=ScoredRule.sort_key)

    def score(self, rule: MatchRule, from_address: str, subject: str, body: str) -> int | None:
        """Score of ``rule`` for this e-mail, or None when it does not apply."""
        sender_points = self._sender_points(rule, from_address)
        if sender_points == 0:
            return None

        try:
            patterns = _compile_patterns(tuple(rule.subject_patterns))
        except re.error as exc:
            log.warning(
                "invalid_subject_pattern",
                rule_id=rule.id,
                rule_name=rule.name,
                error=str(exc),
            )
            return None

        subject_hits = sum(1 for p in patterns if p.search(subject or ""))
        if patterns and subject_hits == 0:
            return None

        body_lower = (body or "").lower()
        keywords = [k.lower() for k in rule.body_keywords if k]
        body_hits = sum(1 for k in keywords if k in body_lower)
        if keywords and body_hits == 0:
            return None

        total = (
            rule.priority
            + sender_points
            + SUBJECT_HIT_POINTS * subject_hits
            + BODY_HIT_POINTS * body_hits
        )
        return total if total > 0 else None

    @staticmethod
    def _sender_points(rule: MatchRule, from_address: str) -> int:
        header = (from_address or "").strip().lower()
        if not header:
            return 0
        bare = extract_address(header)
        points = 0
        for configured in rule.from_addresses:
            candidate = configured.strip().lower()
            if not candidate:
                continue
            if candidate in (bare, header):
                return EXACT_SENDER_POINTS
            if candidate in header:
                points = PARTIAL_SENDER_POINTS
        return points
