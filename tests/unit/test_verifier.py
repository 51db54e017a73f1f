from agent_engine.agent.verifier import DEFAULT_RULES, VerificationRule, Verifier, citation_markers
from agent_engine.config import VerifierConfig
from agent_engine.types import (
    Candidate,
    GatheredContext,
    Request,
    Severity,
    Source,
    SourceType,
)

REQUEST = Request(text="What is the refund policy?", user_id="u1", session_id="s1")
WITH_SOURCES = GatheredContext(
    relevant_sources=(
        Source(id="file:policies/refunds.md", type=SourceType.FILE, title="refunds.md"),
    )
)
NO_SOURCES = GatheredContext()


def _codes(result) -> list[str]:
    return [issue.code for issue in result.issues]


def test_cited_answer_passes_cleanly() -> None:
    candidate = Candidate(text="Customers can request a refund within 30 days of purchase [1].")

    result = Verifier().check(candidate, REQUEST, WITH_SOURCES)

    assert result.passed is True
    assert result.issues == ()
    assert result.feedback == "OK"


def test_empty_response_is_an_error() -> None:
    result = Verifier().check(Candidate(text="   "), REQUEST, NO_SOURCES)

    assert result.passed is False
    assert "EMPTY_RESPONSE" in [issue.code for issue in result.errors]


def test_markdown_constructs_fail_for_mrkdwn_transport() -> None:
    candidate = Candidate(
        text="**Refund** policy: see [the doc](https://example.com) [1]\n> quoted refund terms"
    )

    result = Verifier().check(candidate, REQUEST, WITH_SOURCES)

    assert result.passed is False
    assert {"MARKDOWN_BOLD", "MARKDOWN_LINK", "BLOCKQUOTE"} <= set(_codes(result))
    assert "[MARKDOWN_BOLD]" in result.feedback


def test_formatting_rules_skipped_for_markdown_transport() -> None:
    candidate = Candidate(text="**Refund** policy allows returns within 30 days [1].")

    result = Verifier(VerifierConfig(text_format="markdown")).check(candidate, REQUEST, WITH_SOURCES)

    assert result.passed is True
    assert "MARKDOWN_BOLD" not in _codes(result)


def test_warnings_do_not_block() -> None:
    candidate = Candidate(text="Refunds are possible within thirty days of purchase.")

    result = Verifier().check(candidate, REQUEST, WITH_SOURCES)

    assert result.passed is True
    assert _codes(result) == ["CITES_SOURCES"]
    assert result.issues[0].severity is Severity.WARNING


def test_out_of_range_markers_do_not_count_as_citations() -> None:
    candidate = Candidate(text="Refunds are possible within thirty days of purchase [3].")

    result = Verifier().check(candidate, REQUEST, WITH_SOURCES)

    assert result.passed is True
    assert _codes(result) == ["CITES_SOURCES"]


def test_sources_footer_counts_as_citation() -> None:
    candidate = Candidate(text="Refunds are possible within thirty days.\n\nSources: refunds.md")

    result = Verifier().check(candidate, REQUEST, WITH_SOURCES)

    assert "CITES_SOURCES" not in _codes(result)


def test_short_and_off_topic_answers_warn() -> None:
    result = Verifier().check(Candidate(text="Sure."), REQUEST, NO_SOURCES)

    assert result.passed is True
    assert {"MINIMUM_LENGTH", "ADDRESSES_QUESTION"} <= set(_codes(result))


def test_strong_claims_without_sources_warn() -> None:
    candidate = Candidate(text="The refund policy is definitely guaranteed for every purchase.")

    assert "UNSUPPORTED_CLAIMS" in _codes(Verifier().check(candidate, REQUEST, NO_SOURCES))
    assert "UNSUPPORTED_CLAIMS" not in _codes(Verifier().check(candidate, REQUEST, WITH_SOURCES))


def test_rules_are_extensible() -> None:
    no_apologies = VerificationRule(
        code="NO_APOLOGY",
        severity=Severity.ERROR,
        feedback="Do not apologize.",
        check=lambda text, request, context, config: "sorry" not in text.lower(),
    )
    verifier = Verifier(rules=(*DEFAULT_RULES, no_apologies))

    result = verifier.check(Candidate(text="Sorry, the refund policy is 30 days [1]."), REQUEST, WITH_SOURCES)

    assert result.passed is False
    assert _codes(result) == ["NO_APOLOGY"]


def test_citation_markers_are_distinct_and_ordered() -> None:
    assert citation_markers("a [2] b [1] c [2] d [x]") == [2, 1]
