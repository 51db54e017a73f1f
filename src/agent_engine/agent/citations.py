"""Source attribution footer appended to delivered answers."""

from __future__ import annotations

from collections.abc import Sequence

from agent_engine.agent.verifier import citation_markers
from agent_engine.types import Source

_LINK_TEXT_ESCAPES = str.maketrans({"|": "¦", ">": "›", "<": "‹"})
_LINK_URL_ESCAPES = str.maketrans({"|": "%7C", ">": "%3E", "<": "%3C"})


def cited_sources(text: str, sources: Sequence[Source]) -> list[tuple[int, Source]]:
    """(marker, source) pairs for the in-range `[n]` markers in `text`, by marker."""
    return sorted(
        (number, sources[number - 1])
        for number in citation_markers(text)
        if 1 <= number <= len(sources)
    )


def format_link(source: Source, text_format: str = "mrkdwn") -> str:
    if text_format == "mrkdwn":
        title = source.title.translate(_LINK_TEXT_ESCAPES)
        if source.url:
            return f"<{source.url.strip().translate(_LINK_URL_ESCAPES)}|{title}>"
        return title
    if source.url and text_format == "markdown":
        return f"[{source.title}]({source.url.strip()})"
    if source.url:
        return f"{source.title} ({source.url.strip()})"
    return source.title


def format_citation_footer(text: str, sources: Sequence[Source], text_format: str = "mrkdwn") -> str:
    """Footer listing the sources `text` cites, or "" when it cites none.

    Example (mrkdwn)::

        _Sources:_
        • [1] <https://wiki.example.com/refunds|Refund FAQ>
        • [2] Thread message #3
    """

    cited = cited_sources(text, sources)
    if not cited:
        return ""
    header = "Sources:" if text_format == "plain" else "_Sources:_"
    lines = [f"• [{number}] {format_link(source, text_format)}" for number, source in cited]
    return "\n\n" + header + "\n" + "\n".join(lines)
