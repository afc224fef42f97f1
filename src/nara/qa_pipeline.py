#!/usr/bin/env python3
"""
Nara Answering Pipeline

Turns a question plus playback context into an AnswerResult:

    progress gate -> chapter loader -> budget planner -> focused selector | compressor
        -> context packer -> answerer -> post-processor

Stages run strictly in order and let errors propagate; the orchestrator owns
the fallback policy.
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from . import config as CFG
from . import prompts
from .answerer import answer, parse_time_ref
from .budget import available_budget, decide_mode, estimate_unit_tokens
from .content_store import ChapterLoader
from .error_handler import ServiceError
from .interactions import CancelToken
from .logging_utils import setup_logger, log_with_context
from .models import AnswerResult, Citation, PackingMode, PlaybackContext, PlaybackHint, TranscriptUnit
from .packers import pack_context, select_focused

logger = setup_logger("nara.qa_pipeline", "logs/pipeline.log")


def resolve_allowed_chapter(context: PlaybackContext) -> int:
    """Highest chapter the listener has legitimately reached"""
    return min(context.playback_chapter_index, context.listener_progress_chapter_index)


@dataclass(frozen=True)
class GuardVerdict:
    ok: bool
    reason: Optional[str] = None


_FUTURE_PHRASES = (
    "what happens next", "what happens later", "what happens at the end", "how does it end",
    "how does the book end", "how does the story end", "the ending", "the twist",
    "next chapter", "later chapters", "later in the book", "by the end", "spoil",
)
_CHAPTER_NUMBER = re.compile(r"\bchapter\s+(\d+)\b")


def guard_question(question: str, allowed_chapter_index: int) -> GuardVerdict:
    """Flag questions that openly ask about content beyond the allowed chapter"""
    text = question.lower()
    for phrase in _FUTURE_PHRASES:
        if phrase in text:
            return GuardVerdict(False, f"asks about later content ({phrase!r})")
    for match in _CHAPTER_NUMBER.finditer(text):
        if int(match.group(1)) > allowed_chapter_index:
            return GuardVerdict(False, f"asks about chapter {match.group(1)}")
    return GuardVerdict(True)


def compress(llm, units: Sequence[TranscriptUnit], target_tokens: int = 9000,
             cancel: Optional[CancelToken] = None) -> str:
    """Model-written summary of the chapter; failures propagate"""
    full_text = " ".join(u.text for u in units)
    summary = llm.complete(
        prompts.system_compress(target_tokens),
        [{"role": "user", "content": full_text}],
        cancel=cancel,
        max_tokens=target_tokens,
    )
    if not summary or not summary.strip():
        raise ServiceError("Compression returned no text", component="compressor", operation="compress")
    logger.info(f"Compressed {len(full_text)} chars to {len(summary)} chars")
    return summary.strip()


def finalize(citations: Sequence[Citation], units: Sequence[TranscriptUnit],
             allowed_chapter_index: int) -> Optional[PlaybackHint]:
    """Playback hint from the first time citation that lands inside the chapter"""
    if not units:
        return None
    lo = min(u.start_seconds for u in units)
    hi = max(max(u.end_seconds, u.start_seconds) for u in units)
    for citation in citations:
        if citation.type != "time":
            continue
        seconds = parse_time_ref(citation.ref)
        if seconds is None:
            continue
        if lo <= seconds <= hi:
            return PlaybackHint(chapter_index=allowed_chapter_index, start_seconds=float(seconds))
        logger.debug(f"Ignoring out-of-range time citation {citation.ref}")
    return None


def take_notes(llm, transcript: str, cancel: Optional[CancelToken] = None) -> str:
    """High-level notes for a discussion transcript; degrades to a fixed message"""
    if not transcript.strip():
        return "Nothing to summarize yet."
    try:
        return llm.complete(prompts.SYSTEM_NOTES, [{"role": "user", "content": transcript}], cancel=cancel).strip()
    except ServiceError as e:
        logger.warning(f"Note taking failed: {e}")
        return "Unable to generate notes at this time."


class AnsweringPipeline:
    """Runs every stage for one question"""

    def __init__(self, loader: ChapterLoader, llm, token_budget: int = 180_000,
                 headroom_tokens: int = 20_000, mode_hint: str = "auto",
                 full_limit: int = 50_000, compressed_limit: int = 100_000,
                 compress_target_tokens: int = 9000, neighbor_window: int = 1,
                 fallback_units: int = 8, spoiler_guard: bool = True,
                 system_global: Optional[str] = None):
        self.loader = loader
        self.llm = llm
        self.token_budget = token_budget
        self.headroom_tokens = headroom_tokens
        self.mode_hint = mode_hint
        self.full_limit = full_limit
        self.compressed_limit = compressed_limit
        self.compress_target_tokens = compress_target_tokens
        self.neighbor_window = neighbor_window
        self.fallback_units = fallback_units
        self.spoiler_guard = spoiler_guard
        self.system_global = system_global

    @classmethod
    def from_config(cls, loader: ChapterLoader, llm) -> "AnsweringPipeline":
        return cls(
            loader, llm,
            token_budget=CFG.get_token_budget(),
            headroom_tokens=CFG.get_headroom_tokens(),
            mode_hint=CFG.get_mode_hint(),
            full_limit=CFG.get_full_limit_tokens(),
            compressed_limit=CFG.get_compressed_limit_tokens(),
            compress_target_tokens=CFG.get_compress_target_tokens(),
            neighbor_window=CFG.get_neighbor_window(),
            fallback_units=CFG.get_fallback_units(),
            spoiler_guard=CFG.spoiler_guard_enabled(),
            system_global=CFG.get_system_prompt(),
        )

    def ask(self, question: str, context: PlaybackContext, cancel: Optional[CancelToken] = None,
            mode_hint: Optional[str] = None, interaction_id: Optional[str] = None) -> AnswerResult:
        started = time.perf_counter()
        cancel = cancel or CancelToken()

        allowed = resolve_allowed_chapter(context)
        log_with_context(logger, logging.INFO, f"Question for chapter {allowed}: {question[:80]!r}",
                         request_id=interaction_id, audiobook_id=context.audiobook_id, stage="gate")

        if self.spoiler_guard:
            verdict = guard_question(question, allowed)
            if not verdict.ok:
                logger.info(f"Spoiler guard deflected question: {verdict.reason}")
                return AnswerResult(
                    markdown=prompts.spoiler_deflection(allowed),
                    latency_ms=(time.perf_counter() - started) * 1000.0,
                )

        content = self.loader.load(context.audiobook_id, allowed)
        cancel.raise_if_cancelled("pipeline", "load")

        tokens = estimate_unit_tokens(content.units)
        mode = decide_mode(tokens, available_budget(self.token_budget, self.headroom_tokens),
                           mode_hint or self.mode_hint, self.full_limit, self.compressed_limit)
        logger.info(f"Chapter {allowed}: ~{tokens} tokens -> {mode.value} mode")

        units: List[TranscriptUnit] = list(content.units)
        compressed_text = None
        if mode is PackingMode.FOCUSED:
            units = select_focused(content.units, question, self.neighbor_window, self.fallback_units)
        elif mode is PackingMode.COMPRESSED:
            compressed_text = compress(self.llm, content.units, self.compress_target_tokens, cancel)
        cancel.raise_if_cancelled("pipeline", "prepare")

        packed = pack_context(content, question, allowed, mode, units=units,
                              compressed_text=compressed_text, system_global=self.system_global)
        parsed = answer(self.llm, packed, cancel)
        cancel.raise_if_cancelled("pipeline", "answer")

        hint = finalize(parsed.citations, content.units, allowed)
        latency_ms = (time.perf_counter() - started) * 1000.0
        log_with_context(logger, logging.INFO, f"Answered in {latency_ms:.0f} ms", request_id=interaction_id,
                         audiobook_id=context.audiobook_id, stage="post_process", mode=mode.value,
                         citations=len(parsed.citations))
        return AnswerResult(
            markdown=parsed.markdown,
            citations=list(parsed.citations),
            playback_hint=hint,
            latency_ms=latency_ms,
            mode=mode,
        )


__all__ = [
    "resolve_allowed_chapter", "GuardVerdict", "guard_question", "compress", "finalize",
    "take_notes", "AnsweringPipeline",
]
