"""Rule-based verification of candidate answers.

Every rule is evaluated independently. Only `error` issues fail a candidate;
`warning` issues are surfaced as feedback for the next attempt but never block
delivery on their own.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from agent_engine.config import VerifierConfig
from agent_engine.retrieval.scoring import keywords
from agent_engine.types import (
    Candidate,
    GatheredContext,
    Request,
    Severity,
    VerificationIssue,
    VerificationResult,
)

_BOLD_PATTERN = re.compile(r"\*\*[^*]+\*\*")
_LINK_PATTERN = re.compile(r"\[[^\]]+\]\([^)]+\)")
_BLOCKQUOTE_PATTERN = re.compile(r"^>", flags=re.MULTILINE)
_CITATION_PATTERN = re.compile(r"\[(\d+)\]")
_SOURCES_FOOTER_PATTERN = re.compile(r"^\s*[*_]?sources[*_]?\s*:", flags=re.IGNORECASE | re.MULTILINE)
_STRONG_CLAIM_PATTERNS = (
    re.compile(r"\b(definitely|certainly|always|never|guaranteed)\b|100%", flags=re.IGNORECASE),
    re.compile(r"studies show|research proves|data shows", flags=re.IGNORECASE),
    re.compile(r"according to experts|scientists agree", flags=re.IGNORECASE),
)

RuleCheck = Callable[[str, Request, GatheredContext, VerifierConfig], bool]


@dataclass(slots=True, frozen=True)
class VerificationRule:
    code: str
    severity: Severity
    feedback: str
    check: RuleCheck
    mrkdwn_only: bool = False


def citation_markers(text: str) -> list[int]:
    """Distinct `[n]` markers in order of first appearance."""
    seen: list[int] = []
    for match in _CITATION_PATTERN.finditer(text):
        number = int(match.group(1))
        if number not in seen:
            seen.append(number)
    return seen


def has_sources_footer(text: str) -> bool:
    return _SOURCES_FOOTER_PATTERN.search(text) is not None


def _not_empty(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    return bool(text.strip())


def _minimum_length(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    required = min(int(len(request.text) * config.min_length_ratio), config.min_length_cap)
    return len(text.strip()) >= required


def _no_markdown_bold(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    return _BOLD_PATTERN.search(text) is None


def _no_markdown_link(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    return _LINK_PATTERN.search(text) is None


def _no_blockquote(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    return _BLOCKQUOTE_PATTERN.search(text) is None


def _cites_sources(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    if not context.relevant_sources:
        return True
    count = len(context.relevant_sources)
    if any(1 <= number <= count for number in citation_markers(text)):
        return True
    return has_sources_footer(text)


def _addresses_question(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    terms = keywords(request.text)
    if not terms:
        return True
    lowered = text.lower()
    return any(term in lowered for term in terms)


def _no_unsupported_claims(text: str, request: Request, context: GatheredContext, config: VerifierConfig) -> bool:
    if context.relevant_sources:
        return True
    return not any(pattern.search(text) for pattern in _STRONG_CLAIM_PATTERNS)


DEFAULT_RULES: tuple[VerificationRule, ...] = (
    VerificationRule(
        code="EMPTY_RESPONSE",
        severity=Severity.ERROR,
        feedback="Response cannot be empty.",
        check=_not_empty,
    ),
    VerificationRule(
        code="MINIMUM_LENGTH",
        severity=Severity.WARNING,
        feedback="Response is too short for the question.",
        check=_minimum_length,
    ),
    VerificationRule(
        code="MARKDOWN_BOLD",
        severity=Severity.ERROR,
        feedback="Use *bold* instead of **bold**.",
        check=_no_markdown_bold,
        mrkdwn_only=True,
    ),
    VerificationRule(
        code="MARKDOWN_LINK",
        severity=Severity.ERROR,
        feedback="Use <url|text> instead of [text](url) links.",
        check=_no_markdown_link,
        mrkdwn_only=True,
    ),
    VerificationRule(
        code="BLOCKQUOTE",
        severity=Severity.ERROR,
        feedback="Do not use blockquotes; use bullet points instead.",
        check=_no_blockquote,
        mrkdwn_only=True,
    ),
    VerificationRule(
        code="CITES_SOURCES",
        severity=Severity.WARNING,
        feedback="Sources were gathered but the response lacks citation markers like [1].",
        check=_cites_sources,
    ),
    VerificationRule(
        code="ADDRESSES_QUESTION",
        severity=Severity.WARNING,
        feedback="Response does not appear to address the question.",
        check=_addresses_question,
    ),
    VerificationRule(
        code="UNSUPPORTED_CLAIMS",
        severity=Severity.WARNING,
        feedback="Response makes strong factual claims without source support.",
        check=_no_unsupported_claims,
    ),
)


class Verifier:
    """Pure, synchronous candidate checker."""

    def __init__(
        self,
        config: VerifierConfig | None = None,
        rules: Sequence[VerificationRule] | None = None,
    ) -> None:
        self.config = config or VerifierConfig()
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES

    def check(
        self, candidate: Candidate, request: Request, context: GatheredContext
    ) -> VerificationResult:
        issues: list[VerificationIssue] = []
        for rule in self.rules:
            if rule.mrkdwn_only and self.config.text_format != "mrkdwn":
                continue
            if rule.check(candidate.text, request, context, self.config):
                continue
            issues.append(
                VerificationIssue(code=rule.code, severity=rule.severity, message=rule.feedback)
            )

        passed = not any(issue.severity is Severity.ERROR for issue in issues)
        return VerificationResult(passed=passed, issues=tuple(issues), feedback=format_feedback(issues))


def format_feedback(issues: Sequence[VerificationIssue]) -> str:
    if not issues:
        return "OK"
    return "\n".join(f"[{issue.code}] {issue.message}" for issue in issues)
