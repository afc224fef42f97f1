import os
import sys
import tempfile

import pytest

# Keep test runs away from the sound card and the repo's logs/ directory
os.environ.setdefault("NARA_NO_AUDIO", "1")
os.environ.setdefault("NARA_LOG_DIR", tempfile.mkdtemp(prefix="nara-test-logs-"))

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara import config as cfg  # noqa: E402
from nara.content_store import InMemoryContentStore  # noqa: E402
from nara.models import Chapter, TranscriptUnit  # noqa: E402


@pytest.fixture
def empty_config(monkeypatch):
    """Run against built-in defaults regardless of config/config.yaml"""
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", True, raising=False)


CHAPTER_ONE_TEXT = [
    (300.0, 340.0, "Every moment in business happens only once. The next Bill Gates will not build an operating system."),
    (340.0, 395.0, "Going from zero to one means doing something new: vertical progress, creating what did not exist."),
    (395.0, 465.0, "Going from one to n means copying things that work: horizontal progress, also called globalization."),
    (465.0, 540.0, "Technology is the way to go from zero to one; without it the future is only more of the same."),
]


@pytest.fixture
def book_store():
    """Three-chapter book: chapter 0 and 1 transcribed, chapter 2 not ingested yet"""
    store = InMemoryContentStore()
    chapters = [
        Chapter(0, "Preface", 0.0, 300.0),
        Chapter(1, "The Challenge of the Future", 300.0, 1200.0),
        Chapter(2, "Party Like It's 1999", 1200.0, 2400.0),
    ]
    units = [TranscriptUnit(0, 10.0, 60.0, "This book is about how to build companies that create new things.")]
    units += [TranscriptUnit(1, start, end, text) for start, end, text in CHAPTER_ONE_TEXT]
    summaries = [{"idx": 0, "title": "Preface", "summary": "Why new things matter."}]
    store.add_book("zero_to_one", "Zero to One", chapters, units, summaries)
    return store
