import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.models import Chapter, ChapterContent, PackingMode, TranscriptUnit
from nara.packers import extract_keywords, format_time_tag, pack_context, select_focused


def _units(texts, chapter=1):
    return [TranscriptUnit(chapter, i * 10.0, i * 10.0 + 9.0, t) for i, t in enumerate(texts)]


def test_keywords_drop_stop_words_and_short_words():
    assert extract_keywords("What does the author mean by zero to one?") == ["zero", "one"]
    assert extract_keywords("Why do monopolies, monopolies win?") == ["monopolies", "win"]


def test_focused_selection_keeps_neighbors_in_order():
    units = _units(["intro", "filler a", "monopolies are good", "filler b", "filler c", "filler d"])
    chosen = select_focused(units, "Why are monopolies good?", neighbor_window=1)

    assert [u.text for u in chosen] == ["filler a", "monopolies are good", "filler b"]


def test_focused_selection_falls_back_to_first_units():
    units = _units([f"paragraph {i}" for i in range(12)])
    chosen = select_focused(units, "Who is Peter Thiel?", fallback_count=8)

    assert chosen == units[:8]


def test_time_tag_format():
    assert format_time_tag(165) == "[t=02:45]"
    assert format_time_tag(0) == "[t=00:00]"


def _content(units, chapter_index=1):
    return ChapterContent(
        book_title="Zero to One",
        chapter=Chapter(chapter_index, "The Challenge of the Future"),
        units=units,
        prior_summaries=["- Chapter 0: Preface\n  Why new things matter."],
    )


def test_full_pack_numbers_units_and_orders_sections():
    units = _units(["first paragraph", "second paragraph"])
    packed = pack_context(_content(units), "What is new?", 1, PackingMode.FULL)

    body = packed.messages[0]["content"]
    assert "[p1] [t=00:00] first paragraph" in body
    assert "[p2] [t=00:10] second paragraph" in body
    assert body.index("## Current Chapter Content") < body.index("## Prior Chapter Summaries") < body.index("## Question")
    assert "Chapter 1" in packed.system_prompt
    assert packed.unit_count == 2


def test_focused_pack_keeps_original_paragraph_numbers():
    units = _units(["a", "b", "c"])
    packed = pack_context(_content(units), "q", 1, PackingMode.FOCUSED, units=[units[2]])

    assert "[p3] [t=00:20] c" in packed.messages[0]["content"]
    assert packed.unit_count == 1


def test_compressed_pack_uses_summary_text():
    packed = pack_context(_content(_units(["a"])), "q", 1, PackingMode.COMPRESSED, compressed_text="Summary.")
    assert "## Current Chapter Content\n\nSummary." in packed.messages[0]["content"]


def test_compressed_pack_requires_text():
    with pytest.raises(ValueError):
        pack_context(_content(_units(["a"])), "q", 1, PackingMode.COMPRESSED)


def test_chapter_beyond_allowed_is_rejected():
    with pytest.raises(ValueError):
        pack_context(_content(_units(["a"], chapter=3), chapter_index=3), "q", 1)


def test_units_beyond_allowed_chapter_are_filtered():
    units = _units(["allowed"]) + _units(["later spoiler"], chapter=2)
    packed = pack_context(_content(units), "q", 1, PackingMode.FULL)

    assert "later spoiler" not in packed.messages[0]["content"]
