"""
Answer generation and citation parsing.

A model reply is either structured JSON ({"answer_markdown", "citations"}) or
free prose; the two cases are distinct result types rather than a parse
attempt wrapped in error handling.
"""
import json
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .interactions import CancelToken
from .logging_utils import setup_logger
from .models import Citation
from .packers import PackedPrompt

logger = setup_logger("nara.answerer", "logs/pipeline.log")

TIME_TAG = re.compile(r"\[t=(\d{1,3}):(\d{2})\]")
BARE_TIME_TAG = re.compile(r"\[(\d{1,3}:\d{2})\]")
PARA_TAG = re.compile(r"\[(?:p|para)\d+\]")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass(frozen=True)
class StructuredAnswer:
    markdown: str
    citations: List[Citation] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedAnswer:
    markdown: str
    citations: List[Citation] = field(default_factory=list)


ParsedAnswer = Union[StructuredAnswer, ExtractedAnswer]


def extract_citations(text: str) -> List[Citation]:
    """Time and paragraph references found in prose.

    Bare [MM:SS] tags are normalized to [t=MM:SS]; duplicates are dropped.
    """
    found: List[Citation] = []
    for match in TIME_TAG.finditer(text):
        found.append(Citation("time", match.group(0)))
    for match in BARE_TIME_TAG.finditer(text):
        found.append(Citation("time", f"[t={match.group(1)}]"))
    for match in PARA_TAG.finditer(text):
        found.append(Citation("para", match.group(0)))

    unique: List[Citation] = []
    for citation in found:
        if citation not in unique:
            unique.append(citation)
    return unique


def parse_time_ref(ref: str) -> Optional[int]:
    """Seconds for a [t=MM:SS] (or bare [MM:SS]) reference"""
    match = TIME_TAG.fullmatch(ref.strip()) or re.fullmatch(r"\[?(\d{1,3}):(\d{2})\]?", ref.strip())
    if not match:
        return None
    minutes, seconds = int(match.group(1)), int(match.group(2))
    if seconds >= 60:
        return None
    return minutes * 60 + seconds


def _coerce_citations(raw) -> List[Citation]:
    citations: List[Citation] = []
    if not isinstance(raw, list):
        return citations
    for item in raw:
        if not isinstance(item, dict):
            continue
        kind, ref = item.get("type"), item.get("ref")
        if kind not in ("para", "time") or not isinstance(ref, str) or not ref.strip():
            continue
        ref = ref.strip()
        if kind == "time" and BARE_TIME_TAG.fullmatch(ref):
            ref = f"[t={ref[1:-1]}]"
        citation = Citation(kind, ref)
        if citation not in citations:
            citations.append(citation)
    return citations


def parse_response(text: str) -> ParsedAnswer:
    body = text.strip()
    fenced = _CODE_FENCE.match(body)
    if fenced:
        body = fenced.group(1)

    data = None
    if body.startswith("{"):
        try:
            data = json.loads(body)
        except ValueError:
            data = None

    if isinstance(data, dict) and isinstance(data.get("answer_markdown"), str) and data["answer_markdown"].strip():
        markdown = data["answer_markdown"].strip()
        citations = _coerce_citations(data.get("citations"))
        if not citations:
            citations = extract_citations(markdown)
        return StructuredAnswer(markdown=markdown, citations=citations)

    return ExtractedAnswer(markdown=text.strip(), citations=extract_citations(text))


def answer(llm, packed: PackedPrompt, cancel: Optional[CancelToken] = None) -> ParsedAnswer:
    """One model call; errors propagate to the caller"""
    reply = llm.complete(packed.system_prompt, packed.messages, cancel=cancel)
    parsed = parse_response(reply)
    logger.info(f"{type(parsed).__name__} answer with {len(parsed.citations)} citations")
    return parsed


__all__ = [
    "StructuredAnswer", "ExtractedAnswer", "ParsedAnswer", "extract_citations",
    "parse_time_ref", "parse_response", "answer",
]
