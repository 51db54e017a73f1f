import asyncio
from pathlib import Path

import pytest

from agent_engine.agent.gather import Gatherer
from agent_engine.config import GatherConfig
from agent_engine.memory.conversations import InMemoryConversationStore
from agent_engine.retrieval.corpus import LocalCorpus
from agent_engine.types import HistoryEntry, KnowledgeExcerpt, Request, Source, SourceType


def _write_corpus(root: Path) -> None:
    (root / "policies").mkdir()
    (root / "policies" / "refunds.md").write_text(
        "# Refunds\n\nRefund policy: customers can request a refund within 30 days of purchase.\n",
        encoding="utf-8",
    )
    (root / "handbook.txt").write_text("Holiday arrangements live in the employee handbook.\n", encoding="utf-8")
    (root / "image.png").write_bytes(b"\x89PNG refund policy")


class _SlowStore:
    async def search_corpus(self, query: str) -> list[KnowledgeExcerpt]:
        await asyncio.sleep(10)
        return []


class _BrokenStore:
    async def search_corpus(self, query: str) -> list[KnowledgeExcerpt]:
        raise RuntimeError("store offline")


class _WikiStore:
    async def search_corpus(self, query: str) -> list[KnowledgeExcerpt]:
        return [
            KnowledgeExcerpt(
                reference="Refund FAQ",
                excerpt="Refunds are issued to the original payment method.",
                url="https://wiki.example.com/refunds",
            )
        ]


@pytest.mark.asyncio
async def test_knowledge_sources_come_first(tmp_path: Path) -> None:
    _write_corpus(tmp_path)
    gatherer = Gatherer(LocalCorpus(tmp_path))
    request = Request(
        text="What is the refund policy?",
        user_id="u1",
        session_id="s1",
        history=(
            HistoryEntry(role="user", text="We discussed the refund policy for annual plans yesterday."),
            HistoryEntry(role="assistant", text="Lunch is served at noon."),
        ),
    )

    context = await gatherer.gather(request)

    assert [item.reference for item in context.knowledge_excerpts] == ["policies/refunds.md"]
    assert "refund within 30 days" in context.knowledge_excerpts[0].excerpt
    assert context.thread_snippets == (
        "(user) We discussed the refund policy for annual plans yesterday.",
    )
    assert [source.id for source in context.relevant_sources] == [
        "file:policies/refunds.md",
        "thread:s1:0",
    ]
    assert context.relevant_sources[1].type is SourceType.THREAD


@pytest.mark.asyncio
async def test_history_is_fetched_when_request_has_none(tmp_path: Path) -> None:
    store = InMemoryConversationStore()
    store.append("s1", "user", "Our refund window changed last quarter.")
    store.append("s2", "user", "Unrelated refund chatter in another session.")
    gatherer = Gatherer(LocalCorpus(tmp_path), conversation_store=store)

    context = await gatherer.gather(Request(text="refund window details", user_id="u1", session_id="s1"))

    assert context.thread_snippets == ("(user) Our refund window changed last quarter.",)


@pytest.mark.asyncio
async def test_no_matches_yield_empty_context(tmp_path: Path) -> None:
    _write_corpus(tmp_path)
    gatherer = Gatherer(LocalCorpus(tmp_path))

    context = await gatherer.gather(Request(text="zxqv blorp flimflam", user_id="u1", session_id="s1"))

    assert context.is_empty
    assert context.render() == ""


@pytest.mark.asyncio
async def test_store_failures_do_not_drop_corpus_results(tmp_path: Path) -> None:
    _write_corpus(tmp_path)
    request = Request(text="What is the refund policy?", user_id="u1", session_id="s1")

    for store in (_SlowStore(), _BrokenStore()):
        gatherer = Gatherer(
            LocalCorpus(tmp_path),
            GatherConfig(timeout_seconds=0.1),
            knowledge_store=store,
        )
        context = await gatherer.gather(request)
        assert [source.id for source in context.relevant_sources] == ["file:policies/refunds.md"]


@pytest.mark.asyncio
async def test_external_store_sources_carry_url(tmp_path: Path) -> None:
    gatherer = Gatherer(LocalCorpus(tmp_path), knowledge_store=_WikiStore())

    context = await gatherer.gather(Request(text="refund method", user_id="u1", session_id="s1"))

    assert len(context.relevant_sources) == 1
    source = context.relevant_sources[0]
    assert source.type is SourceType.WEB
    assert source.id == "knowledge:Refund FAQ"
    assert source.url == "https://wiki.example.com/refunds"


@pytest.mark.asyncio
async def test_context_is_bounded(tmp_path: Path) -> None:
    history = tuple(
        HistoryEntry(role="user", text=f"refund policy note {index}: " + "details " * 20)
        for index in range(20)
    )
    config = GatherConfig(max_context_chars=600, max_thread_snippets=20, thread_token_budget=5000)
    gatherer = Gatherer(LocalCorpus(tmp_path), config)

    context = await gatherer.gather(
        Request(text="refund policy", user_id="u1", session_id="s1", history=history)
    )

    assert 0 < len(context.thread_snippets) < 20
    assert len(context.render()) <= 600
    assert len(context.relevant_sources) == len(context.thread_snippets)


@pytest.mark.asyncio
async def test_corpus_scan_respects_limits(tmp_path: Path) -> None:
    for index in range(5):
        (tmp_path / f"doc{index}.md").write_text(f"refund note {index}", encoding="utf-8")
    deep = tmp_path / "a" / "b" / "c"
    deep.mkdir(parents=True)
    (deep / "deep.md").write_text("refund deep", encoding="utf-8")

    corpus = LocalCorpus(tmp_path, GatherConfig(max_files=3, max_depth=1))
    documents = corpus.load()

    assert len(documents) == 3
    assert all("/" not in document.reference for document in documents)
    hits = await corpus.search("refund")
    assert [hit.document.reference for hit in hits] == ["doc0.md", "doc1.md", "doc2.md"]


@pytest.mark.asyncio
async def test_pinned_findings_are_clipped_to_the_context_bound(tmp_path: Path) -> None:
    _write_corpus(tmp_path)
    history = tuple(
        HistoryEntry(role="user", text=f"refund policy note {index}: " + "details " * 20)
        for index in range(5)
    )
    pinned_sources = tuple(
        Source(id=f"file:finding-{index}.md", type=SourceType.FILE, title=f"finding-{index}.md", excerpt="x" * 150)
        for index in range(40)
    )
    gatherer = Gatherer(LocalCorpus(tmp_path), GatherConfig(max_context_chars=1000))

    context = await gatherer.gather(
        Request(text="What is the refund policy?", user_id="u1", session_id="s1", history=history),
        pinned=KnowledgeExcerpt(reference="sub-task findings", excerpt="refund finding " * 4000),
        pinned_sources=pinned_sources,
    )

    assert len(context.render()) <= 1000
    assert context.thread_snippets == ()
    assert [item.reference for item in context.knowledge_excerpts] == ["sub-task findings"]


@pytest.mark.asyncio
async def test_pinned_findings_lead_when_they_fit(tmp_path: Path) -> None:
    _write_corpus(tmp_path)
    gatherer = Gatherer(LocalCorpus(tmp_path))
    finding = Source(id="file:sso.md", type=SourceType.FILE, title="sso.md")

    context = await gatherer.gather(
        Request(text="What is the refund policy?", user_id="u1", session_id="s1"),
        pinned=KnowledgeExcerpt(reference="sub-task findings", excerpt="SSO uses SAML."),
        pinned_sources=(finding,),
    )

    assert [item.reference for item in context.knowledge_excerpts] == [
        "sub-task findings",
        "policies/refunds.md",
    ]
    assert [source.id for source in context.relevant_sources] == ["file:sso.md", "file:policies/refunds.md"]
