#!/usr/bin/env python3
"""
Nara Wake/Utterance Recognizer

Scores streaming transcripts against the wake phrase and, once woken,
forwards the listener's finalized utterances to the orchestrator.

Wake scoring is the maximum of four independent strategies multiplied by the
STT confidence:

    exact match            1.0 when the phrase appears as contiguous words
    edit distance          Levenshtein similarity - 0.3 (needs >= 70% similarity)
    phoneme substitution   0.8 when the phrase matches after known mis-hearings
    partial words          mean per-word match (exact/prefix/substring), >= 0.6
"""
import re
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from . import config as CFG
from .logging_utils import setup_logger
from .messages import CommandTimedOut, Message, UtteranceFinalized, WakeDetected
from .models import Role, Utterance

logger = setup_logger("nara.wake_word", "logs/wake_word.log")

EDIT_DISTANCE_PENALTY = 0.3
EDIT_DISTANCE_MIN_SIMILARITY = 0.7
PHONEME_MATCH_SCORE = 0.8
PARTIAL_MIN_AVERAGE = 0.6
PREFIX_MATCH_SCORE = 0.7
SUBSTRING_MATCH_SCORE = 0.5

# Common mis-transcriptions of "hey nara"; override with wake.phoneme_substitutions
DEFAULT_PHONEME_SUBSTITUTIONS: Dict[str, str] = {
    "hay": "hey",
    "hei": "hey",
    "hi": "hey",
    "heya": "hey",
    "nora": "nara",
    "norah": "nara",
    "narrow": "nara",
    "narra": "nara",
    "nada": "nara",
    "naira": "nara",
    "nyra": "nara",
    "sara": "nara",
    "sarah": "nara",
    "laura": "nara",
}

_NON_WORD = re.compile(r"[^a-z0-9' ]+")


def normalize(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace"""
    cleaned = _NON_WORD.sub(" ", text.lower().replace("-", " "))
    return " ".join(cleaned.replace("'", "").split())


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def _find_words(words: Sequence[str], target: Sequence[str]) -> int:
    """Index of target as a contiguous run inside words, or -1"""
    n = len(target)
    if n == 0:
        return -1
    for i in range(len(words) - n + 1):
        if list(words[i:i + n]) == list(target):
            return i
    return -1


def exact_match_score(transcript: str, phrase: str) -> float:
    words = normalize(transcript).split()
    target = normalize(phrase).split()
    return 1.0 if _find_words(words, target) >= 0 else 0.0


def edit_distance_score(transcript: str, phrase: str) -> float:
    text = normalize(transcript)
    target = normalize(phrase)
    if not text or not target:
        return 0.0

    best = similarity(text, target)
    words = text.split()
    width = len(target.split())
    if len(words) > width:
        for i in range(len(words) - width + 1):
            best = max(best, similarity(" ".join(words[i:i + width]), target))

    if best < EDIT_DISTANCE_MIN_SIMILARITY:
        return 0.0
    return max(0.0, best - EDIT_DISTANCE_PENALTY)


def apply_substitutions(text: str, substitutions: Dict[str, str]) -> str:
    return " ".join(substitutions.get(word, word) for word in normalize(text).split())


def phoneme_substitution_score(transcript: str, phrase: str,
                               substitutions: Optional[Dict[str, str]] = None) -> float:
    table = DEFAULT_PHONEME_SUBSTITUTIONS if substitutions is None else substitutions
    text = apply_substitutions(transcript, table)
    target = apply_substitutions(phrase, table)
    if not text or not target:
        return 0.0
    return PHONEME_MATCH_SCORE if target in text else 0.0


def _word_match(word: str, candidate: str) -> float:
    if word == candidate:
        return 1.0
    if len(word) >= 3 and len(candidate) >= 3 and word[:3] == candidate[:3]:
        return PREFIX_MATCH_SCORE
    shorter, longer = sorted((word, candidate), key=len)
    if len(shorter) >= 3 and shorter in longer:
        return SUBSTRING_MATCH_SCORE
    return 0.0


def partial_word_score(transcript: str, phrase: str) -> float:
    words = normalize(transcript).split()
    target = normalize(phrase).split()
    if not words or not target:
        return 0.0
    average = sum(max(_word_match(t, w) for w in words) for t in target) / len(target)
    return average if average >= PARTIAL_MIN_AVERAGE else 0.0


STRATEGIES = {
    "exact": exact_match_score,
    "edit_distance": edit_distance_score,
    "phoneme": phoneme_substitution_score,
    "partial": partial_word_score,
}


def strategy_scores(transcript: str, phrase: str,
                    substitutions: Optional[Dict[str, str]] = None) -> Dict[str, float]:
    return {
        "exact": exact_match_score(transcript, phrase),
        "edit_distance": edit_distance_score(transcript, phrase),
        "phoneme": phoneme_substitution_score(transcript, phrase, substitutions),
        "partial": partial_word_score(transcript, phrase),
    }


def score_wake_phrase(transcript: str, phrase: str, stt_confidence: float = 1.0,
                      substitutions: Optional[Dict[str, str]] = None) -> float:
    """Combined wake confidence in [0, 1]"""
    best = max(strategy_scores(transcript, phrase, substitutions).values())
    confidence = min(max(stt_confidence, 0.0), 1.0)
    return best * confidence


def strip_wake_phrase(transcript: str, phrase: str) -> str:
    """Text following the wake phrase, or '' when nothing follows it"""
    words = normalize(transcript).split()
    target = normalize(phrase).split()
    idx = _find_words(words, target)
    if idx < 0:
        return ""
    return " ".join(words[idx + len(target):])


class RecognizerMode(Enum):
    WAKE = "wake"
    COMMAND = "command"


class WakeWordRecognizer:
    """Two-mode recognizer that turns STT utterances into orchestrator messages"""

    def __init__(self, emit: Callable[[Message], None], phrase: str = "hey nara",
                 sensitivity: float = 0.7, debounce_sec: float = 2.0,
                 command_timeout_sec: float = 5.0,
                 substitutions: Optional[Dict[str, str]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.emit = emit
        self.phrase = phrase
        self.sensitivity = sensitivity
        self.debounce_sec = debounce_sec
        self.command_timeout_sec = command_timeout_sec
        self.substitutions = substitutions
        self.clock = clock

        self.mode = RecognizerMode.WAKE
        self.last_detection: Optional[float] = None
        self.detections: List[WakeDetected] = []
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, emit: Callable[[Message], None]) -> "WakeWordRecognizer":
        return cls(
            emit,
            phrase=CFG.get_wake_phrase(),
            sensitivity=CFG.get_wake_sensitivity(),
            debounce_sec=CFG.get_wake_debounce_sec(),
            command_timeout_sec=CFG.get_command_timeout_sec(),
            substitutions=CFG.get_phoneme_substitutions(),
        )

    def score(self, transcript: str, stt_confidence: float = 1.0) -> float:
        return score_wake_phrase(transcript, self.phrase, stt_confidence, self.substitutions)

    def process(self, utterance: Utterance) -> Optional[Message]:
        """Handle one STT event; returns the message emitted, if any"""
        if utterance.role is not Role.LISTENER:
            return None
        text = utterance.text.strip()
        if not text:
            return None

        with self._lock:
            if self.mode is RecognizerMode.WAKE:
                return self._process_wake(utterance, text)
            return self._process_command(utterance, text)

    def _process_wake(self, utterance: Utterance, text: str) -> Optional[Message]:
        confidence = self.score(text, utterance.confidence)
        if confidence < self.sensitivity:
            return None
        now = self.clock()
        if self.last_detection is not None and now - self.last_detection < self.debounce_sec:
            logger.debug(f"Wake phrase debounced: {text!r}")
            return None

        detection = self._detect(text, confidence, now)
        if utterance.is_final:
            remainder = strip_wake_phrase(text, self.phrase)
            if remainder:
                self._forward(Utterance(remainder, True, utterance.confidence, utterance.timestamp, utterance.role))
        return detection

    def _process_command(self, utterance: Utterance, text: str) -> Optional[Message]:
        if not utterance.is_final:
            return None
        if self.score(text, 1.0) >= self.sensitivity:
            remainder = strip_wake_phrase(text, self.phrase)
            if not remainder:
                # The tail of the wake utterance itself
                return None
            utterance = Utterance(remainder, True, utterance.confidence, utterance.timestamp, utterance.role)
        return self._forward(utterance)

    def _detect(self, transcript: str, confidence: float, now: float, manual: bool = False) -> WakeDetected:
        self.last_detection = now
        self.mode = RecognizerMode.COMMAND
        detection = WakeDetected(transcript=transcript, confidence=confidence, manual=manual)
        self.detections.append(detection)
        logger.info(f"Wake phrase detected ({confidence:.2f}): {transcript!r}")
        self._start_timer()
        self.emit(detection)
        return detection

    def _forward(self, utterance: Utterance) -> Message:
        self._cancel_timer()
        message = UtteranceFinalized(utterance=utterance)
        logger.info(f"Utterance forwarded: {utterance.text[:80]!r}")
        self.emit(message)
        return message

    def trigger(self) -> WakeDetected:
        """Manual wake (push-to-talk), ignores debounce"""
        with self._lock:
            return self._detect(self.phrase + " (manual)", 1.0, self.clock(), manual=True)

    def enter_command_mode(self) -> None:
        """Listen for a command without a wake phrase (used after barge-in)"""
        with self._lock:
            self.mode = RecognizerMode.COMMAND
            self._start_timer()

    def reset(self) -> None:
        with self._lock:
            self._cancel_timer()
            self.mode = RecognizerMode.WAKE

    def _start_timer(self) -> None:
        self._cancel_timer()
        if self.command_timeout_sec <= 0:
            return
        timer = threading.Timer(self.command_timeout_sec, self._on_command_timeout)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_command_timeout(self) -> None:
        with self._lock:
            if self.mode is not RecognizerMode.COMMAND or self._timer is None:
                return
            if threading.current_thread() is not self._timer:
                return
            self._timer = None
            self.mode = RecognizerMode.WAKE
        logger.info("Command timeout, back to wake phrase listening")
        self.emit(CommandTimedOut(source="recognizer"))

    def close(self) -> None:
        self.reset()


__all__ = [
    "RecognizerMode", "WakeWordRecognizer", "STRATEGIES", "DEFAULT_PHONEME_SUBSTITUTIONS",
    "exact_match_score", "edit_distance_score", "phoneme_substitution_score", "partial_word_score",
    "strategy_scores", "score_wake_phrase", "strip_wake_phrase", "levenshtein", "similarity", "normalize",
]
