import json
import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.content_store import ChapterLoader
from nara.error_handler import ContentUnavailable, InteractionAborted, ServiceError
from nara.interactions import CancelToken
from nara.models import Citation, PackingMode, PlaybackContext, PlaybackHint, TranscriptUnit
from nara.qa_pipeline import AnsweringPipeline, compress, finalize, take_notes


class FakeLLM:
    """Scripted chat model; records every call"""

    def __init__(self, replies=None, error=None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    def complete(self, system, messages, cancel=None, max_tokens=None, temperature=None):
        self.calls.append({"system": system, "messages": messages, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return self.replies.pop(0)


ZERO_TO_ONE_REPLY = json.dumps({
    "answer_markdown": "Going from zero to one means **creating something new** [t=05:40].",
    "citations": [{"type": "time", "ref": "[t=05:40]"}, {"type": "para", "ref": "[p2]"}],
})


def _context(playback=1, progress=1):
    return PlaybackContext("zero_to_one", 0.0, playback, progress)


def test_zero_to_one_question_uses_only_chapter_one(book_store):
    llm = FakeLLM([ZERO_TO_ONE_REPLY])
    pipeline = AnsweringPipeline(ChapterLoader(book_store), llm)

    result = pipeline.ask("What does the author mean by zero to one?", _context(playback=2, progress=1))

    prompt = llm.calls[0]["messages"][0]["content"]
    assert "vertical progress" in prompt
    assert "This book is about how to build companies" not in prompt
    assert "Party Like It's 1999" not in prompt
    assert "Chapter 1" in llm.calls[0]["system"]
    assert result.mode is PackingMode.FULL
    assert any(c.type in ("time", "para") for c in result.citations)
    assert result.playback_hint == PlaybackHint(chapter_index=1, start_seconds=340.0)
    assert result.fallback is False
    assert result.latency_ms >= 0


def test_missing_transcript_raises_content_unavailable(book_store):
    pipeline = AnsweringPipeline(ChapterLoader(book_store), FakeLLM())

    with pytest.raises(ContentUnavailable):
        pipeline.ask("What happened?", _context(playback=2, progress=2))


def test_model_errors_propagate(book_store):
    pipeline = AnsweringPipeline(ChapterLoader(book_store), FakeLLM(error=ServiceError("down")))

    with pytest.raises(ServiceError):
        pipeline.ask("What does zero to one mean?", _context())


def test_compressed_mode_summarizes_then_answers(book_store):
    llm = FakeLLM(["Chapter summary: vertical progress [t=05:40].", "Answer [t=05:40]."])
    pipeline = AnsweringPipeline(ChapterLoader(book_store), llm, mode_hint="compressed",
                                 compress_target_tokens=500)

    result = pipeline.ask("What is vertical progress?", _context())

    assert len(llm.calls) == 2
    assert llm.calls[0]["max_tokens"] == 500
    assert "Chapter summary" in llm.calls[1]["messages"][0]["content"]
    assert result.mode is PackingMode.COMPRESSED
    assert result.citations == [Citation("time", "[t=05:40]")]


def test_compression_failure_is_not_swallowed(book_store):
    llm = FakeLLM(["   "])
    with pytest.raises(ServiceError):
        compress(llm, book_store.get_units("zero_to_one", 1))

    pipeline = AnsweringPipeline(ChapterLoader(book_store), FakeLLM(error=ServiceError("boom")),
                                 mode_hint="compressed")
    with pytest.raises(ServiceError):
        pipeline.ask("What is vertical progress?", _context())


def test_focused_mode_packs_matching_units(book_store):
    llm = FakeLLM(["Globalization is horizontal progress [p3]."])
    pipeline = AnsweringPipeline(ChapterLoader(book_store), llm, mode_hint="focused", neighbor_window=0)

    result = pipeline.ask("What is globalization?", _context())

    prompt = llm.calls[0]["messages"][0]["content"]
    assert "[p3]" in prompt
    assert "Every moment in business" not in prompt
    assert result.mode is PackingMode.FOCUSED
    assert result.playback_hint is None


def test_spoiler_guard_deflects_without_model_call(book_store):
    llm = FakeLLM()
    pipeline = AnsweringPipeline(ChapterLoader(book_store), llm)

    result = pipeline.ask("What happens in chapter 2?", _context())

    assert llm.calls == []
    assert "Chapter 1" in result.markdown


def test_cancelled_token_aborts_before_model_call(book_store):
    llm = FakeLLM([ZERO_TO_ONE_REPLY])
    token = CancelToken()
    token.cancel("barge-in")
    pipeline = AnsweringPipeline(ChapterLoader(book_store), llm)

    with pytest.raises(InteractionAborted):
        pipeline.ask("What does zero to one mean?", _context(), token)
    assert llm.calls == []


def test_finalize_ignores_out_of_range_time_citations():
    units = [TranscriptUnit(1, 300.0, 340.0, "a"), TranscriptUnit(1, 340.0, 395.0, "b")]

    assert finalize([Citation("time", "[t=30:00]")], units, 1) is None
    assert finalize([Citation("para", "[p1]"), Citation("time", "[t=05:10]")], units, 1) == \
        PlaybackHint(1, 310.0)
    assert finalize([Citation("time", "[t=05:10]")], [], 1) is None


def test_take_notes_degrades_to_fixed_message():
    assert take_notes(FakeLLM(error=ServiceError("down")), "Listener: hi") == \
        "Unable to generate notes at this time."
    assert take_notes(FakeLLM(), "  ") == "Nothing to summarize yet."
    assert take_notes(FakeLLM(["Topic: zero to one"]), "Listener: hi") == "Topic: zero to one"
