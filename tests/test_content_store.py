import json
import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.content_store import (
    AudiobookNotFound, ChapterLoader, JsonContentStore, format_prior_summaries, resolve_chapter_index,
)
from nara.error_handler import ContentUnavailable
from nara.models import Chapter


def _write_dataset(directory, audiobook_id="zero_to_one", with_summaries=True, key="segments"):
    data = {
        "source": {"title": "Zero to One"},
        "chapters": [
            {"idx": 0, "title": "Preface", "start_s": 0, "end_s": 300},
            {"idx": 1, "title": "The Challenge of the Future", "start_s": 300, "end_s": 1200},
            {"idx": 2, "title": "Party Like It's 1999", "start_s": 1200, "end_s": 2400},
        ],
        key: [
            {"chapter_idx": 1, "start_s": 340, "end_s": 395, "text": "Zero to one is vertical progress."},
            {"chapter_idx": 1, "start_s": 300, "end_s": 340, "text": "Every moment happens once."},
            {"chapter_idx": 1, "start_s": 400, "end_s": 410, "text": "   "},
            {"chapter_idx": 0, "start_s": 10, "end_s": 60, "text": "A book about new things."},
        ],
    }
    (directory / f"{audiobook_id}.json").write_text(json.dumps(data))
    if with_summaries:
        summaries = [
            {"idx": 0, "title": "Preface", "summary": "Why new things matter."},
            {"idx": 1, "title": "The Challenge of the Future", "summary": "Vertical versus horizontal."},
        ]
        (directory / f"{audiobook_id}.summaries.json").write_text(json.dumps(summaries))


def test_json_store_loads_dataset_lazily(tmp_path):
    _write_dataset(tmp_path)
    store = JsonContentStore(str(tmp_path))

    assert store.list_audiobooks() == ["zero_to_one"]
    assert store.has_book("zero_to_one")
    assert store.get_book_title("zero_to_one") == "Zero to One"
    units = store.get_units("zero_to_one", 1)
    assert [u.text for u in units] == ["Every moment happens once.", "Zero to one is vertical progress."]
    assert store.get_units("zero_to_one", 2) == []


def test_paragraphs_key_is_accepted(tmp_path):
    _write_dataset(tmp_path, key="paragraphs", with_summaries=False)
    store = JsonContentStore(str(tmp_path))

    assert len(store.get_units("zero_to_one", 1)) == 2
    assert store.get_summaries("zero_to_one") == []


def test_unknown_book_raises_not_found(tmp_path):
    store = JsonContentStore(str(tmp_path))

    assert not store.has_book("missing")
    with pytest.raises(AudiobookNotFound):
        store.get_chapters("missing")


def test_progress_round_trip(book_store):
    assert book_store.get_progress("me", "zero_to_one") is None
    book_store.set_progress("me", "zero_to_one", 2)
    assert book_store.get_progress("me", "zero_to_one") == 2


def test_loader_returns_only_allowed_chapter(tmp_path):
    _write_dataset(tmp_path)
    loader = ChapterLoader(JsonContentStore(str(tmp_path)))

    content = loader.load("zero_to_one", 1)

    assert content.chapter.index == 1
    assert all(u.chapter_index == 1 for u in content.units)
    assert content.prior_summaries == ["- Chapter 0: Preface\n  Why new things matter."]


def test_loader_raises_content_unavailable_for_missing_transcript(book_store):
    loader = ChapterLoader(book_store)

    with pytest.raises(ContentUnavailable):
        loader.load("zero_to_one", 2)
    with pytest.raises(ContentUnavailable):
        loader.load("zero_to_one", 9)


def test_prior_summaries_are_limited_and_ordered():
    summaries = [{"idx": i, "title": f"C{i}", "summary": f"S{i}"} for i in (4, 0, 2, 1, 3)]

    bullets = format_prior_summaries(summaries, chapter_index=4, count=2)

    assert bullets == ["- Chapter 2: C2\n  S2", "- Chapter 3: C3\n  S3"]
    assert format_prior_summaries(summaries, chapter_index=4, count=0) == []


def test_resolve_chapter_index():
    chapters = [Chapter(0, "a", 0, 300), Chapter(1, "b", 300, 1200), Chapter(2, "c", 1200, 2400)]

    assert resolve_chapter_index(chapters, 0) == 0
    assert resolve_chapter_index(chapters, 299.9) == 0
    assert resolve_chapter_index(chapters, 300) == 1
    assert resolve_chapter_index(chapters, 5000) == 2
    assert resolve_chapter_index([], 10) is None
