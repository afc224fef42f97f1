#!/usr/bin/env python3
"""
Nara data model: audio frames, utterances, playback context, transcript
content and answers.
"""
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

import numpy as np


class Role(Enum):
    """Who produced an utterance"""
    LISTENER = "listener"
    SYSTEM = "system"


class PackingMode(Enum):
    """How much chapter text goes into the prompt"""
    FULL = "full"
    COMPRESSED = "compressed"
    FOCUSED = "focused"


@dataclass
class AudioFrame:
    """A 10-20 ms slice of mono float32 PCM plus its RMS level"""
    samples: np.ndarray
    timestamp: float
    level: float = 0.0

    @classmethod
    def from_samples(cls, samples: np.ndarray, timestamp: float) -> "AudioFrame":
        flat = np.asarray(samples, dtype=np.float32).ravel()
        level = float(np.sqrt(np.mean(flat ** 2))) if flat.size else 0.0
        return cls(samples=flat, timestamp=timestamp, level=level)


@dataclass(frozen=True)
class Utterance:
    text: str
    is_final: bool
    confidence: float = 1.0
    timestamp: float = 0.0
    role: Role = Role.LISTENER


@dataclass
class PlaybackContext:
    """Where the listener is. Written by the host, copied for each question."""
    audiobook_id: str
    current_position_seconds: float = 0.0
    playback_chapter_index: int = 0
    listener_progress_chapter_index: int = 0

    def snapshot(self) -> "PlaybackContext":
        return replace(self)


class PlaybackContextHolder:
    """Thread-safe owner of the live PlaybackContext"""

    def __init__(self, context: PlaybackContext):
        self._context = context
        self._lock = threading.Lock()

    def get(self) -> PlaybackContext:
        with self._lock:
            return self._context.snapshot()

    def update(self, **changes) -> PlaybackContext:
        with self._lock:
            self._context = replace(self._context, **changes)
            return self._context.snapshot()


@dataclass(frozen=True)
class Chapter:
    index: int
    title: str
    start_seconds: float = 0.0
    end_seconds: float = 0.0


@dataclass(frozen=True)
class TranscriptUnit:
    """A paragraph or timed segment of a chapter transcript"""
    chapter_index: int
    start_seconds: float
    end_seconds: float
    text: str


@dataclass(frozen=True)
class Citation:
    type: str  # "para" or "time"
    ref: str

    def to_dict(self) -> dict:
        return {"type": self.type, "ref": self.ref}


@dataclass(frozen=True)
class PlaybackHint:
    chapter_index: int
    start_seconds: float

    def to_dict(self) -> dict:
        return {"chapter_index": self.chapter_index, "start_seconds": self.start_seconds}


@dataclass(frozen=True)
class ChapterContent:
    """Everything the pipeline may read for one question"""
    book_title: str
    chapter: Chapter
    units: List[TranscriptUnit]
    prior_summaries: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AnswerResult:
    markdown: str
    citations: List[Citation] = field(default_factory=list)
    playback_hint: Optional[PlaybackHint] = None
    latency_ms: float = 0.0
    mode: Optional[PackingMode] = None
    fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "answer_markdown": self.markdown,
            "citations": [c.to_dict() for c in self.citations],
            "playback_hint": self.playback_hint.to_dict() if self.playback_hint else None,
            "latency_ms": round(self.latency_ms, 1),
            "mode": self.mode.value if self.mode else None,
            "fallback": self.fallback,
        }
