#!/usr/bin/env python3
"""
Nara Interaction Orchestrator

Single-writer state machine driven by typed messages:

    IDLE -> LISTENING -> PROCESSING -> SPEAKING -> IDLE

with barge-in from PROCESSING/SPEAKING back to LISTENING. Every transition
goes through ``dispatch`` under one lock and is looked up in ``TRANSITIONS``;
message/state pairs missing from the table are ignored.

The pipeline and TTS run on a per-interaction worker thread that reports back
with ``AnswerReady`` / ``SpeechFinished`` / ``InteractionFailed``. Results
from an interaction that is no longer current are dropped.
"""
import queue
import re
import threading
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple, Type, Union

import numpy as np

from .error_handler import (
    ContentUnavailable, ErrorHandler, ErrorSeverity, ServiceTimeout, handle_error,
)
from .interactions import (
    CancelToken, Interaction, InteractionManager, InteractionOutcome, InteractionState,
)
from .logging_utils import setup_logger
from .messages import (
    AnswerReady, CancelRequested, CommandTimedOut, InteractionFailed, Message,
    SpeechFinished, SpeechStarted, UtteranceFinalized, WakeDetected,
)
from .models import AnswerResult, PlaybackContext, PlaybackContextHolder, Role

logger = setup_logger("nara.orchestrator", "logs/orchestrator.log")

DEFAULT_FALLBACK_ANSWER = (
    "I don't have the text for this part of the book yet, so I can't answer that right now."
)

IDLE = InteractionState.IDLE
LISTENING = InteractionState.LISTENING
PROCESSING = InteractionState.PROCESSING
SPEAKING = InteractionState.SPEAKING

TRANSITIONS: Dict[Tuple[InteractionState, Type[Message]], str] = {
    (IDLE, WakeDetected): "_on_wake",
    (IDLE, SpeechStarted): "_on_idle_speech",
    (LISTENING, WakeDetected): "_on_listening_activity",
    (LISTENING, SpeechStarted): "_on_listening_activity",
    (LISTENING, UtteranceFinalized): "_on_utterance",
    (LISTENING, CommandTimedOut): "_on_listen_timeout",
    (LISTENING, CancelRequested): "_on_cancel",
    (PROCESSING, WakeDetected): "_on_barge_in",
    (PROCESSING, SpeechStarted): "_on_barge_in",
    (PROCESSING, AnswerReady): "_on_answer_ready",
    (PROCESSING, InteractionFailed): "_on_failed",
    (PROCESSING, CancelRequested): "_on_cancel",
    (SPEAKING, WakeDetected): "_on_barge_in",
    (SPEAKING, SpeechStarted): "_on_barge_in",
    (SPEAKING, SpeechFinished): "_on_speech_finished",
    (SPEAKING, InteractionFailed): "_on_failed",
    (SPEAKING, CancelRequested): "_on_cancel",
}

_BOLD = re.compile(r"\*\*")
_HEADING = re.compile(r"#+\s*")
_BULLET = re.compile(r"^-\s*", re.MULTILINE)
_BLANK_LINES = re.compile(r"\n{2,}")


def strip_markup(text: str) -> str:
    """Remove markdown markers before text goes to the speech synthesizer"""
    text = _BOLD.sub("", text)
    text = text.replace("*", "")
    text = _HEADING.sub("", text)
    text = _BULLET.sub("", text)
    text = text.replace("`", "")
    text = _BLANK_LINES.sub("\n", text)
    return text.strip()


ContextProvider = Union[PlaybackContextHolder, Callable[[], PlaybackContext]]


class InteractionOrchestrator:
    """Owns pause/resume rights over playback for one interaction at a time"""

    def __init__(self, pipeline, playback, tts, player, context_provider: ContextProvider,
                 manager: Optional[InteractionManager] = None, muted: bool = False,
                 continuous_listen: bool = False, listen_timeout: Optional[float] = None,
                 fallback_answer: str = DEFAULT_FALLBACK_ANSWER, seek_to_citation: bool = False,
                 error_handler: Optional[ErrorHandler] = None):
        self.pipeline = pipeline
        self.playback = playback
        self.tts = tts
        self.player = player
        self.context_provider = context_provider
        self.manager = manager or InteractionManager()
        self.muted = muted
        self.continuous_listen = continuous_listen
        self.listen_timeout = listen_timeout
        self.fallback_answer = fallback_answer
        self.seek_to_citation = seek_to_citation
        self.error_handler = error_handler

        self._lock = threading.RLock()
        self._listen_timer: Optional[threading.Timer] = None
        self._listen_generation = 0
        self._workers: Dict[str, threading.Thread] = {}
        self._inbox: "queue.Queue[Message]" = queue.Queue()
        self._running = False
        self._loop_thread: Optional[threading.Thread] = None

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> InteractionState:
        return self.manager.state

    @property
    def current(self) -> Optional[Interaction]:
        return self.manager.current

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        logger.info(f"Spoken answers {'muted' if muted else 'unmuted'}")

    # -- message intake ------------------------------------------------------

    def dispatch(self, message: Message) -> bool:
        """Apply one message; returns True if it caused a transition"""
        with self._lock:
            state = self.manager.state
            handler_name = TRANSITIONS.get((state, type(message)))
            if handler_name is None:
                logger.debug(f"Ignoring {type(message).__name__} in {state.value}")
                return False
            return getattr(self, handler_name)(message)

    def post(self, message: Message) -> None:
        """Queue a message for the dispatch loop; safe from audio callbacks"""
        self._inbox.put(message)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_thread = threading.Thread(target=self._run_loop, name="nara-orchestrator", daemon=True)
        self._loop_thread.start()
        logger.info("Orchestrator started")

    def _run_loop(self) -> None:
        while self._running:
            try:
                message = self._inbox.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.dispatch(message)
            except Exception as e:
                handle_error(e, "orchestrator", "dispatch", ErrorSeverity.HIGH, handler=self.error_handler)

    def stop(self, timeout: float = 2.0) -> None:
        self.dispatch(CancelRequested(reason="shutdown"))
        self._running = False
        self._cancel_listen_timer()
        if self._loop_thread:
            self._loop_thread.join(timeout=timeout)
            self._loop_thread = None
        for worker in list(self._workers.values()):
            worker.join(timeout=timeout)
        logger.info("Orchestrator stopped")

    # -- transition handlers -------------------------------------------------

    def _on_wake(self, message: WakeDetected) -> bool:
        logger.info(f"Wake detected ({'manual' if message.manual else f'{message.confidence:.2f}'})")
        self._begin_listening()
        return True

    def _on_idle_speech(self, message: SpeechStarted) -> bool:
        if not self.continuous_listen:
            return False
        self._begin_listening()
        return True

    def _on_listening_activity(self, message: Message) -> bool:
        self._arm_listen_timer()
        return True

    def _on_utterance(self, message: UtteranceFinalized) -> bool:
        utterance = message.utterance
        if utterance is None or not utterance.is_final or utterance.role is not Role.LISTENER:
            return False
        question = utterance.text.strip()
        if not question:
            return False

        self._cancel_listen_timer()
        interaction = Interaction.create(question)
        self.manager.begin(interaction)
        self.manager.update_state(PROCESSING)
        context = self._context_snapshot()

        worker = threading.Thread(
            target=self._run_interaction,
            args=(interaction, context),
            name=f"nara-{interaction.id}",
            daemon=True,
        )
        self._workers[interaction.id] = worker
        worker.start()
        logger.info(f"Interaction {interaction.id} started: {question[:80]!r}")
        return True

    def _on_listen_timeout(self, message: CommandTimedOut) -> bool:
        logger.info(f"No question heard ({message.source}); returning to idle")
        self._cancel_listen_timer()
        self._resume_playback()
        self.manager.update_state(IDLE)
        return True

    def _on_answer_ready(self, message: AnswerReady) -> bool:
        interaction = self._active(message.interaction_id)
        if interaction is None:
            return False
        interaction.result = message.result
        self.manager.update_state(SPEAKING)
        return True

    def _on_speech_finished(self, message: SpeechFinished) -> bool:
        interaction = self._active(message.interaction_id)
        if interaction is None:
            return False
        result = interaction.result
        if self.seek_to_citation and result is not None and result.playback_hint is not None:
            try:
                self.playback.seek(result.playback_hint.start_seconds)
            except Exception as e:
                handle_error(e, "orchestrator", "seek", ErrorSeverity.LOW,
                             handler=self.error_handler, interaction_id=interaction.id)
        # resume before the outcome is published so waiters observe it
        self._resume_playback(interaction)
        self.manager.record_outcome(interaction, InteractionOutcome.COMPLETED)
        self.manager.update_state(IDLE)
        return True

    def _on_failed(self, message: InteractionFailed) -> bool:
        interaction = self._active(message.interaction_id)
        if interaction is None:
            return False
        self._resume_playback(interaction)
        error = message.error
        if isinstance(error, ServiceTimeout):
            outcome, severity = InteractionOutcome.TIMED_OUT, ErrorSeverity.MEDIUM
        else:
            outcome, severity = InteractionOutcome.FAILED, ErrorSeverity.HIGH
        if error is not None:
            handle_error(error, "orchestrator", "interaction", severity,
                         handler=self.error_handler, interaction_id=interaction.id)
        self.manager.record_outcome(interaction, outcome, error)
        self.manager.update_state(IDLE)
        return True

    def _on_barge_in(self, message: Message) -> bool:
        interaction = self.manager.current
        if interaction is not None:
            logger.info(f"Barge-in during {self.manager.state.value}; aborting {interaction.id}")
            self._abort(interaction, "barge-in")
        self.manager.update_state(LISTENING)
        self._arm_listen_timer()
        return True

    def _on_cancel(self, message: CancelRequested) -> bool:
        self._cancel_listen_timer()
        interaction = self.manager.current
        if interaction is not None:
            self._abort(interaction, message.reason)
        self._resume_playback(interaction)
        self.manager.update_state(IDLE)
        return True

    # -- helpers -------------------------------------------------------------

    def _active(self, interaction_id: str) -> Optional[Interaction]:
        interaction = self.manager.current
        if interaction is None or interaction.id != interaction_id or interaction.cancel_token.cancelled:
            logger.debug(f"Dropping stale message for {interaction_id}")
            return None
        return interaction

    def _abort(self, interaction: Interaction, reason: str) -> None:
        interaction.cancel_token.cancel(reason)
        try:
            self.player.interrupt()
        except Exception as e:
            handle_error(e, "orchestrator", "interrupt_audio", ErrorSeverity.LOW, handler=self.error_handler)
        self.manager.record_outcome(interaction, InteractionOutcome.ABORTED)

    def _begin_listening(self) -> None:
        self._pause_playback()
        self.manager.update_state(LISTENING)
        self._arm_listen_timer()

    def _pause_playback(self) -> None:
        try:
            self.playback.pause()
        except Exception as e:
            handle_error(e, "orchestrator", "pause", ErrorSeverity.MEDIUM, handler=self.error_handler)

    def _resume_playback(self, interaction: Optional[Interaction] = None) -> bool:
        """Resume background audio; failures are reported, never raised"""
        try:
            self.playback.resume()
            resumed = True
        except Exception as e:
            handle_error(e, "orchestrator", "resume", ErrorSeverity.HIGH, handler=self.error_handler,
                         interaction_id=interaction.id if interaction else None)
            resumed = False
        if interaction is not None:
            interaction.playback_resumed = resumed
        return resumed

    def _arm_listen_timer(self) -> None:
        self._cancel_listen_timer()
        if not self.listen_timeout or self.listen_timeout <= 0:
            return
        generation = self._listen_generation
        self._listen_timer = threading.Timer(self.listen_timeout, self._on_listen_timer, args=(generation,))
        self._listen_timer.daemon = True
        self._listen_timer.start()

    def _cancel_listen_timer(self) -> None:
        self._listen_generation += 1
        if self._listen_timer is not None:
            self._listen_timer.cancel()
            self._listen_timer = None

    def _on_listen_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._listen_generation:
                return
            self.dispatch(CommandTimedOut(source="orchestrator"))

    def _context_snapshot(self) -> PlaybackContext:
        if isinstance(self.context_provider, PlaybackContextHolder):
            return self.context_provider.get()
        return self.context_provider().snapshot()

    # -- worker --------------------------------------------------------------

    def _run_interaction(self, interaction: Interaction, context: PlaybackContext) -> None:
        token = interaction.cancel_token
        try:
            try:
                result = self.pipeline.ask(interaction.question, context, token, interaction_id=interaction.id)
            except ContentUnavailable as e:
                logger.warning(f"Content unavailable for {interaction.id}: {e}")
                result = AnswerResult(markdown=self.fallback_answer, fallback=True)
            token.raise_if_cancelled("orchestrator", "answer")

            if not self.dispatch(AnswerReady(interaction_id=interaction.id, result=result)):
                return
            completed = self._speak(interaction, result, token)
            self.dispatch(SpeechFinished(interaction_id=interaction.id, completed=completed))
        except Exception as e:
            if token.cancelled:
                logger.info(f"Interaction {interaction.id} stopped after cancel: {token.reason}")
                return
            self.dispatch(InteractionFailed(interaction_id=interaction.id, error=e))
        finally:
            with self._lock:
                self._workers.pop(interaction.id, None)

    def _speak(self, interaction: Interaction, result: AnswerResult, token: CancelToken) -> bool:
        text = strip_markup(result.markdown)
        if self.muted or not text:
            logger.info(f"Answer for {interaction.id} not spoken ({'muted' if self.muted else 'empty'})")
            return True
        token.raise_if_cancelled("orchestrator", "speak")
        chunks = self._track_playback(interaction, self.tts.stream(text, token))
        completed = self.player.play_stream(chunks, token)
        token.raise_if_cancelled("orchestrator", "speak")
        return completed

    @staticmethod
    def _track_playback(interaction: Interaction, chunks: Iterable[np.ndarray]) -> Iterator[np.ndarray]:
        """Pass chunks through, flagging the interaction once the player takes the first one"""
        for chunk in chunks:
            interaction.audio_played = True
            yield chunk

    def get_status(self) -> dict:
        stats = self.manager.get_stats()
        stats.update({
            "muted": self.muted,
            "continuous_listen": self.continuous_listen,
            "pending_messages": self._inbox.qsize(),
        })
        return stats


__all__ = ["TRANSITIONS", "strip_markup", "InteractionOrchestrator", "DEFAULT_FALLBACK_ANSWER"]
