"""
Typed messages exchanged between the audio front end, the wake recognizer
and the interaction orchestrator.
"""
from dataclasses import dataclass, field
import time
from typing import Optional

from .models import AnswerResult, Utterance


@dataclass(frozen=True)
class Message:
    timestamp: float = field(default_factory=time.monotonic, compare=False)


@dataclass(frozen=True)
class WakeDetected(Message):
    transcript: str = ""
    confidence: float = 1.0
    manual: bool = False


@dataclass(frozen=True)
class SpeechStarted(Message):
    level: float = 0.0


@dataclass(frozen=True)
class SpeechEnded(Message):
    pass


@dataclass(frozen=True)
class UtteranceFinalized(Message):
    utterance: Optional[Utterance] = None


@dataclass(frozen=True)
class CommandTimedOut(Message):
    source: str = "recognizer"


@dataclass(frozen=True)
class AnswerReady(Message):
    interaction_id: str = ""
    result: Optional[AnswerResult] = None


@dataclass(frozen=True)
class SpeechFinished(Message):
    interaction_id: str = ""
    completed: bool = True


@dataclass(frozen=True)
class InteractionFailed(Message):
    interaction_id: str = ""
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class CancelRequested(Message):
    reason: str = "stop requested"


__all__ = [
    "Message", "WakeDetected", "SpeechStarted", "SpeechEnded", "UtteranceFinalized",
    "CommandTimedOut", "AnswerReady", "SpeechFinished", "InteractionFailed", "CancelRequested",
]
