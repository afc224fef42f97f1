#!/usr/bin/env python3
"""
Nara Interaction bookkeeping

Interaction states, cancellation tokens, and a manager that keeps interaction
history and notifies listeners of state changes.
"""
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .error_handler import InteractionAborted
from .logging_utils import setup_logger
from .models import AnswerResult

logger = setup_logger("nara.interactions", "logs/orchestrator.log")


class InteractionState(Enum):
    """Orchestrator states"""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class InteractionOutcome(Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class CancelToken:
    """Thread-safe cancellation flag with callbacks.

    Network calls register a callback (typically closing their HTTP response)
    so that cancelling terminates the request instead of ignoring its result.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel once; returns False if already cancelled"""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.debug(f"Cancel callback failed: {e}")
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback; runs immediately if already cancelled. Returns an unregister function."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)
                return _remove
        callback()
        return lambda: None

    def raise_if_cancelled(self, component: str = "interaction", operation: str = "unknown") -> None:
        if self._event.is_set():
            raise InteractionAborted(f"Interaction cancelled: {self.reason}",
                                     component=component, operation=operation)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class Interaction:
    """One spoken exchange"""
    id: str
    started_at: float
    question: str = ""
    state: InteractionState = InteractionState.PROCESSING
    cancel_token: CancelToken = field(default_factory=CancelToken)
    result: Optional[AnswerResult] = None
    outcome: Optional[InteractionOutcome] = None
    error: Optional[BaseException] = None
    finished_at: Optional[float] = None
    playback_resumed: Optional[bool] = None
    audio_played: bool = False
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def create(cls, question: str) -> "Interaction":
        return cls(id=f"int_{uuid.uuid4().hex[:12]}", started_at=time.time(), question=question)

    @property
    def done(self) -> bool:
        return self.done_event.is_set()

    def finish(self, outcome: InteractionOutcome, error: Optional[BaseException] = None) -> bool:
        """Record the outcome once; later calls are ignored"""
        if self.done_event.is_set():
            return False
        self.outcome = outcome
        self.error = error
        self.finished_at = time.time()
        self.done_event.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[InteractionOutcome]:
        if not self.done_event.wait(timeout):
            return None
        return self.outcome

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class InteractionManager:
    """Tracks orchestrator state, interaction history and outcome statistics"""

    def __init__(self, max_history: int = 50):
        self.max_history = max_history
        self.state = InteractionState.IDLE
        self.current: Optional[Interaction] = None
        self.history: List[Interaction] = []
        self.outcome_counts: Dict[str, int] = {o.value: 0 for o in InteractionOutcome}
        self.state_change_callbacks: List[Callable[[InteractionState, InteractionState], None]] = []
        self.lock = threading.RLock()

    def register_state_callback(self, callback: Callable[[InteractionState, InteractionState], None]) -> None:
        with self.lock:
            self.state_change_callbacks.append(callback)

    def update_state(self, new_state: InteractionState) -> None:
        with self.lock:
            old_state = self.state
            if old_state == new_state:
                return
            self.state = new_state
            if self.current is not None and not self.current.done:
                self.current.state = new_state
            callbacks = list(self.state_change_callbacks)
        logger.info(f"State {old_state.value} -> {new_state.value}")
        self._notify_state_change(callbacks, old_state, new_state)

    def _notify_state_change(self, callbacks, old_state: InteractionState, new_state: InteractionState) -> None:
        # Called without holding the lock so callbacks may call back into the manager
        for callback in callbacks:
            try:
                callback(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def begin(self, interaction: Interaction) -> None:
        with self.lock:
            self.current = interaction
            self.history.append(interaction)
            if len(self.history) > self.max_history:
                self.history = self.history[-self.max_history:]

    def record_outcome(self, interaction: Interaction, outcome: InteractionOutcome,
                       error: Optional[BaseException] = None) -> bool:
        with self.lock:
            if not interaction.finish(outcome, error):
                return False
            self.outcome_counts[outcome.value] += 1
            if self.current is interaction:
                self.current = None
        logger.info(f"Interaction {interaction.id} finished: {outcome.value}"
                    + (f" ({error.__class__.__name__}: {error})" if error else ""))
        return True

    def recent_transcript(self, limit: int = 10) -> str:
        """Question/answer pairs of recent completed interactions, oldest first"""
        with self.lock:
            done = [i for i in self.history if i.outcome is InteractionOutcome.COMPLETED and i.result][-limit:]
        lines = []
        for interaction in done:
            lines.append(f"Listener: {interaction.question}")
            lines.append(f"Nara: {interaction.result.markdown}")
        return "\n".join(lines)

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            latencies = [i.result.latency_ms for i in self.history if i.result is not None and not i.result.fallback]
            return {
                "state": self.state.value,
                "active_interaction": self.current.id if self.current else None,
                "total_interactions": sum(self.outcome_counts.values()) + (1 if self.current else 0),
                "outcomes": dict(self.outcome_counts),
                "average_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else None,
            }

    def get_summary(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [
                {
                    "id": i.id,
                    "question": i.question,
                    "outcome": i.outcome.value if i.outcome else None,
                    "duration": round(i.duration, 3) if i.duration is not None else None,
                    "playback_resumed": i.playback_resumed,
                    "answer": i.result.markdown if i.result else None,
                }
                for i in self.history
            ]


__all__ = ["InteractionState", "InteractionOutcome", "CancelToken", "Interaction", "InteractionManager"]
