"""Default tool set exposed to the completion model."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from agent_engine.agent.registry import ToolRegistry, ToolSpec
from agent_engine.errors import ToolCallError
from agent_engine.retrieval.corpus import LocalCorpus
from agent_engine.retrieval.scoring import clip

_REQUIREMENT = re.compile(r"\b(must|shall|required|prohibited|may not|not allowed|only)\b", re.IGNORECASE)
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


class KnowledgeSearchArgs(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=10)


class ReadDocumentArgs(BaseModel):
    reference: str = Field(min_length=1, description="Reference returned by search_knowledge")
    max_chars: int = Field(default=4000, ge=200, le=20000)


class RequirementArgs(BaseModel):
    text: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=50)


def register_builtin_tools(registry: ToolRegistry, corpus: LocalCorpus) -> None:
    """Register the tools every deployment gets.

    `search_knowledge` lists matching corpus files as `- reference: excerpt`
    lines, `read_document` returns one file by that reference, and
    `extract_requirements` pulls normative sentences out of a passage.
    """

    async def _search(args: KnowledgeSearchArgs) -> str:
        hits = await corpus.search(args.query, top_k=args.top_k)
        if not hits:
            return "NO_RESULTS"
        return "\n".join(
            f"- {hit.document.reference}: {clip(' '.join(hit.excerpt.split()), 220)}" for hit in hits
        )

    async def _read(args: ReadDocumentArgs) -> str:
        document = await corpus.document(args.reference)
        if document is None:
            raise ToolCallError(f"Document not found: {args.reference}", status_code=404)
        return f"# {document.title}\n\n{clip(document.text.strip(), args.max_chars)}"

    def _requirements(args: RequirementArgs) -> str:
        found = [
            sentence.strip()
            for sentence in _SENTENCE_END.split(" ".join(args.text.split()))
            if _REQUIREMENT.search(sentence)
        ]
        if not found:
            return "NO_REQUIREMENTS"
        return "\n".join(f"{index}. {sentence}" for index, sentence in enumerate(found[: args.limit], start=1))

    registry.register(
        ToolSpec(
            name="search_knowledge",
            description="Search the team knowledge base. Returns matching excerpts with file references.",
            args_schema=KnowledgeSearchArgs,
            handler=_search,
            tags=["retrieval"],
        )
    )
    registry.register(
        ToolSpec(
            name="read_document",
            description="Read a knowledge base file by the reference search_knowledge returned.",
            args_schema=ReadDocumentArgs,
            handler=_read,
            tags=["retrieval"],
        )
    )
    registry.register(
        ToolSpec(
            name="extract_requirements",
            description="List the sentences in a passage that state a rule or requirement.",
            args_schema=RequirementArgs,
            handler=_requirements,
            tags=["analysis"],
        )
    )
