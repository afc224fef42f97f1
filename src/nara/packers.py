#!/usr/bin/env python3
"""
Nara Context Packing

Keyword-focused unit selection and prompt assembly for the answerer.
"""
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from . import prompts
from .logging_utils import setup_logger
from .models import ChapterContent, PackingMode, TranscriptUnit

logger = setup_logger("nara.packers", "logs/pipeline.log")

STOP_WORDS = frozenset("""
a about above after again against all am an and any are as at be because been before being
below between both but by can could did do does doing down during each few for from further
had has have having he her here hers herself him himself his how i if in into is it its itself
just me more most my myself no nor not now of off on once only or other our ours ourselves out
over own same she should so some such than that the their theirs them themselves then there
these they this those through to too under until up very was we were what when where which
while who whom why will with would you your yours yourself yourselves tell explain mean means
happen happened happens chapter book author story part say said says think thing things
""".split())

_WORD = re.compile(r"[a-z0-9']+")

MIN_KEYWORD_LENGTH = 3


@dataclass
class PackedPrompt:
    system_prompt: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    mode: Optional[PackingMode] = None
    unit_count: int = 0


def _tokens(text: str) -> List[str]:
    return [t.strip("'") for t in _WORD.findall(text.lower())]


def extract_keywords(question: str) -> List[str]:
    """Content-bearing words of a question, in order, without duplicates"""
    seen = []
    for token in _tokens(question):
        if len(token) < MIN_KEYWORD_LENGTH or token in STOP_WORDS or token in seen:
            continue
        seen.append(token)
    return seen


def score_unit(unit: TranscriptUnit, keywords: Sequence[str]) -> int:
    counts = Counter(_tokens(unit.text))
    return sum(counts[k] for k in keywords)


def select_focused(units: Sequence[TranscriptUnit], question: str, neighbor_window: int = 1,
                   fallback_count: int = 8) -> List[TranscriptUnit]:
    """Units matching the question's keywords plus their neighbors, in document order.

    Falls back to the first `fallback_count` units when nothing matches so the
    answer is always grounded in some chapter text.
    """
    keywords = extract_keywords(question)
    selected = set()
    for idx, unit in enumerate(units):
        if keywords and score_unit(unit, keywords) > 0:
            lo = max(0, idx - neighbor_window)
            hi = min(len(units) - 1, idx + neighbor_window)
            selected.update(range(lo, hi + 1))

    if not selected:
        logger.info(f"Focused selection found no keyword hits for {keywords}; using first {fallback_count} units")
        return list(units[:fallback_count])

    chosen = [units[i] for i in sorted(selected)]
    logger.info(f"Focused selection kept {len(chosen)} of {len(units)} units for keywords {keywords}")
    return chosen


def format_time_tag(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"[t={minutes:02d}:{secs:02d}]"


def render_units(units: Sequence[TranscriptUnit], numbering: Dict[int, int]) -> str:
    blocks = []
    for fallback_no, unit in enumerate(units, start=1):
        number = numbering.get(id(unit), fallback_no)
        blocks.append(f"[p{number}] {format_time_tag(unit.start_seconds)} {unit.text}")
    return "\n\n".join(blocks)


def build_messages(question: str, chapter_block: str, prior_bullets: Sequence[str] = ()) -> List[Dict[str, str]]:
    content = "## Current Chapter Content\n\n" + chapter_block
    if prior_bullets:
        content += "\n\n## Prior Chapter Summaries\n\n" + "\n".join(prior_bullets)
    content += "\n\n## Question\n\n" + question
    return [{"role": "user", "content": content}]


def pack_context(content: ChapterContent, question: str, allowed_chapter_index: int,
                 mode: PackingMode = PackingMode.FULL,
                 units: Optional[Sequence[TranscriptUnit]] = None,
                 compressed_text: Optional[str] = None,
                 system_global: Optional[str] = None) -> PackedPrompt:
    """Assemble the system prompt and messages for one question"""
    if content.chapter.index > allowed_chapter_index:
        raise ValueError(f"Chapter {content.chapter.index} is beyond allowed chapter {allowed_chapter_index}")

    numbering = {id(u): i for i, u in enumerate(content.units, start=1)}
    chosen = [u for u in (content.units if units is None else units)
              if u.chapter_index <= allowed_chapter_index]

    if mode is PackingMode.COMPRESSED:
        if not compressed_text:
            raise ValueError("Compressed mode requires compressed text")
        chapter_block = compressed_text.strip()
    else:
        chapter_block = render_units(chosen, numbering)

    system_prompt = "\n\n".join([
        system_global or prompts.SYSTEM_GLOBAL,
        prompts.system_answerer(content.book_title, content.chapter.index, content.chapter.title),
        prompts.spoiler_rule(allowed_chapter_index),
    ])
    messages = build_messages(question, chapter_block, content.prior_summaries)
    logger.debug(f"Packed {len(chosen)} units in {mode.value} mode")
    return PackedPrompt(system_prompt=system_prompt, messages=messages, mode=mode, unit_count=len(chosen))


__all__ = [
    "PackedPrompt", "STOP_WORDS", "extract_keywords", "score_unit", "select_focused",
    "format_time_tag", "render_units", "build_messages", "pack_context",
]
