from agent_engine.agent.actor import build_system_prompt, build_user_turn
from agent_engine.agent.verifier import Verifier
from agent_engine.types import Candidate, GatheredContext, Request, Source, SourceType

_SOURCED = GatheredContext(
    relevant_sources=(
        Source(id="file:refunds.md", type=SourceType.FILE, title="refunds.md", excerpt="Refunds within 30 days."),
    )
)


def test_prompt_requires_citations_when_sources_exist() -> None:
    prompt = build_system_prompt(_SOURCED)

    assert "Cite sources using [1], [2]" in prompt
    assert "(not **bold**)" in prompt
    assert "<url|text>" in prompt


def test_prompt_forbids_speculation_without_sources() -> None:
    prompt = build_system_prompt(GatheredContext())

    assert "Don't make up facts or speculate" in prompt
    assert "[1]" not in prompt


def test_plain_format_prompt_drops_chat_markup_rules() -> None:
    prompt = build_system_prompt(_SOURCED, text_format="plain")

    assert "<url|text>" not in prompt
    assert "Cite sources using [1], [2]" in prompt


def test_user_turn_numbers_sources_and_carries_feedback() -> None:
    request = Request(text="What is the refund policy?", user_id="u", session_id="s")

    turn = build_user_turn(request, _SOURCED, "[MARKDOWN_BOLD] Use *bold*")

    assert turn.startswith("Context:\n## Sources\n[1] refunds.md: Refunds within 30 days.")
    assert "User Question: What is the refund policy?" in turn
    assert turn.endswith("Fix these issues:\n[MARKDOWN_BOLD] Use *bold*")
    assert build_user_turn(request, GatheredContext()) == "What is the refund policy?"


def test_feedback_format_names_each_rejected_rule() -> None:
    request = Request(text="What is the refund policy?", user_id="u", session_id="s")
    candidate = Candidate(text="**Refunds** follow the [policy](https://x.test) [1].", sources=_SOURCED.relevant_sources)

    result = Verifier().check(candidate, request, _SOURCED)

    assert result.passed is False
    assert "[MARKDOWN_BOLD]" in result.feedback
    assert "[MARKDOWN_LINK]" in result.feedback
