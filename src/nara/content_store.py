#!/usr/bin/env python3
"""
Nara Content Store

Read-only access to chapters, transcript units, prior-chapter summaries and
listener progress, plus the chapter loader used by the answering pipeline.

Dataset layout (one file per audiobook under the dataset directory):

    <audiobook_id>.json             {"source": {"title": ...},
                                     "chapters": [{"idx", "title", "start_s", "end_s"}],
                                     "segments": [{"chapter_idx", "start_s", "end_s", "text"}]}
    <audiobook_id>.summaries.json   [{"idx", "title", "summary"}]   (optional)

"paragraphs" is accepted in place of "segments".
"""
import bisect
import json
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .error_handler import ContentUnavailable
from .logging_utils import setup_logger
from .models import Chapter, ChapterContent, TranscriptUnit

logger = setup_logger("nara.content_store", "logs/content_store.log")


class AudiobookNotFound(ContentUnavailable):
    """The audiobook id is unknown to the store"""
    pass


@dataclass
class _Book:
    title: str
    chapters: List[Chapter]
    units: Dict[int, List[TranscriptUnit]] = field(default_factory=dict)
    summaries: List[dict] = field(default_factory=list)


class InMemoryContentStore:
    """Content store backed by plain Python objects"""

    def __init__(self):
        self._books: Dict[str, _Book] = {}
        self._progress: Dict[Tuple[str, str], int] = {}
        self._lock = threading.RLock()

    def add_book(self, audiobook_id: str, title: str, chapters: Sequence[Chapter],
                 units: Sequence[TranscriptUnit], summaries: Optional[Sequence[dict]] = None) -> None:
        by_chapter: Dict[int, List[TranscriptUnit]] = {}
        for unit in units:
            by_chapter.setdefault(unit.chapter_index, []).append(unit)
        for chapter_units in by_chapter.values():
            chapter_units.sort(key=lambda u: u.start_seconds)
        with self._lock:
            self._books[audiobook_id] = _Book(
                title=title,
                chapters=sorted(chapters, key=lambda c: c.index),
                units=by_chapter,
                summaries=list(summaries or []),
            )

    def _book(self, audiobook_id: str) -> _Book:
        with self._lock:
            book = self._books.get(audiobook_id)
        if book is None:
            raise AudiobookNotFound(f"Unknown audiobook: {audiobook_id}",
                                    component="content_store", operation="lookup")
        return book

    def has_book(self, audiobook_id: str) -> bool:
        try:
            self._book(audiobook_id)
            return True
        except AudiobookNotFound:
            return False

    def list_audiobooks(self) -> List[str]:
        with self._lock:
            return sorted(self._books)

    def get_book_title(self, audiobook_id: str) -> str:
        return self._book(audiobook_id).title

    def get_chapters(self, audiobook_id: str) -> List[Chapter]:
        return list(self._book(audiobook_id).chapters)

    def get_chapter(self, audiobook_id: str, chapter_index: int) -> Optional[Chapter]:
        for chapter in self._book(audiobook_id).chapters:
            if chapter.index == chapter_index:
                return chapter
        return None

    def get_units(self, audiobook_id: str, chapter_index: int) -> List[TranscriptUnit]:
        return list(self._book(audiobook_id).units.get(chapter_index, []))

    def get_summaries(self, audiobook_id: str) -> List[dict]:
        return list(self._book(audiobook_id).summaries)

    def get_progress(self, user_id: str, audiobook_id: str) -> Optional[int]:
        with self._lock:
            return self._progress.get((user_id, audiobook_id))

    def set_progress(self, user_id: str, audiobook_id: str, chapter_index: int) -> None:
        with self._lock:
            self._progress[(user_id, audiobook_id)] = int(chapter_index)


class JsonContentStore(InMemoryContentStore):
    """Lazily loads canonical transcript JSON files from a dataset directory"""

    def __init__(self, dataset_dir: str):
        super().__init__()
        self.dataset_dir = dataset_dir

    def dataset_path(self, audiobook_id: str) -> str:
        return os.path.join(self.dataset_dir, f"{audiobook_id}.json")

    def list_audiobooks(self) -> List[str]:
        names = set(super().list_audiobooks())
        if os.path.isdir(self.dataset_dir):
            for name in os.listdir(self.dataset_dir):
                if name.endswith(".json") and not name.endswith(".summaries.json"):
                    names.add(name[:-len(".json")])
        return sorted(names)

    def _book(self, audiobook_id: str) -> _Book:
        with self._lock:
            if audiobook_id not in self._books:
                self._load_dataset(audiobook_id)
        return super()._book(audiobook_id)

    def _load_dataset(self, audiobook_id: str) -> None:
        path = self.dataset_path(audiobook_id)
        if not os.path.exists(path):
            return
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        source = data.get("source") or {}
        title = str(source.get("title") or data.get("title") or audiobook_id)
        chapters = [
            Chapter(
                index=int(ch["idx"]),
                title=str(ch.get("title", f"Chapter {ch['idx']}")),
                start_seconds=float(ch.get("start_s", 0.0)),
                end_seconds=float(ch.get("end_s", 0.0)),
            )
            for ch in data.get("chapters", [])
        ]
        raw_units = data.get("segments") or data.get("paragraphs") or []
        units = [
            TranscriptUnit(
                chapter_index=int(seg["chapter_idx"]),
                start_seconds=float(seg.get("start_s", 0.0)),
                end_seconds=float(seg.get("end_s", seg.get("start_s", 0.0))),
                text=str(seg.get("text", "")).strip(),
            )
            for seg in raw_units
            if str(seg.get("text", "")).strip()
        ]

        summaries: List[dict] = []
        summaries_path = os.path.join(self.dataset_dir, f"{audiobook_id}.summaries.json")
        if os.path.exists(summaries_path):
            try:
                with open(summaries_path, "r", encoding="utf-8") as f:
                    summaries = list(json.load(f))
            except (OSError, ValueError) as e:
                # Summaries are optional context; the chapter itself is still usable
                logger.warning(f"Could not load summaries for {audiobook_id}: {e}")

        self.add_book(audiobook_id, title, chapters, units, summaries)
        logger.info(f"Loaded {audiobook_id}: {len(chapters)} chapters, {len(units)} units, {len(summaries)} summaries")


def format_prior_summaries(summaries: Sequence[dict], chapter_index: int, count: int = 3) -> List[str]:
    """Bullets for the last `count` summarized chapters before chapter_index"""
    earlier = sorted(
        (s for s in summaries if s.get("summary") and int(s.get("idx", -1)) < chapter_index),
        key=lambda s: int(s["idx"]),
    )
    if count <= 0:
        return []
    return [
        f"- Chapter {s['idx']}: {s.get('title', '')}\n  {s['summary']}"
        for s in earlier[-count:]
    ]


def resolve_chapter_index(chapters: Sequence[Chapter], position_seconds: float) -> Optional[int]:
    """Chapter containing a playback position (last chapter starting at or before it)"""
    if not chapters:
        return None
    ordered = sorted(chapters, key=lambda c: c.start_seconds)
    starts = [c.start_seconds for c in ordered]
    pos = bisect.bisect_right(starts, position_seconds) - 1
    if pos < 0:
        return ordered[0].index
    return ordered[pos].index


class ChapterLoader:
    """Loads the allowed chapter's units and short summaries of earlier chapters"""

    def __init__(self, store: InMemoryContentStore, include_prior_summaries: bool = True,
                 prior_summary_count: int = 3):
        self.store = store
        self.include_prior_summaries = include_prior_summaries
        self.prior_summary_count = prior_summary_count

    def load(self, audiobook_id: str, allowed_chapter_index: int) -> ChapterContent:
        title = self.store.get_book_title(audiobook_id)
        chapter = self.store.get_chapter(audiobook_id, allowed_chapter_index)
        if chapter is None:
            raise ContentUnavailable(
                f"Chapter {allowed_chapter_index} of {audiobook_id} does not exist",
                component="chapter_loader", operation="load",
                audiobook_id=audiobook_id, chapter_index=allowed_chapter_index,
            )

        units = [u for u in self.store.get_units(audiobook_id, allowed_chapter_index)
                 if u.chapter_index == allowed_chapter_index]
        if not units:
            raise ContentUnavailable(
                f"No transcript for chapter {allowed_chapter_index} of {audiobook_id}",
                component="chapter_loader", operation="load",
                audiobook_id=audiobook_id, chapter_index=allowed_chapter_index,
            )

        summaries: List[str] = []
        if self.include_prior_summaries and allowed_chapter_index > 0:
            summaries = format_prior_summaries(
                self.store.get_summaries(audiobook_id), allowed_chapter_index, self.prior_summary_count)

        logger.info(f"Loaded chapter {allowed_chapter_index} ({chapter.title!r}): "
                    f"{len(units)} units, {len(summaries)} prior summaries")
        return ChapterContent(book_title=title, chapter=chapter, units=units, prior_summaries=summaries)


__all__ = [
    "AudiobookNotFound", "InMemoryContentStore", "JsonContentStore", "ChapterLoader",
    "format_prior_summaries", "resolve_chapter_index",
]
