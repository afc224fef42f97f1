#!/usr/bin/env python3
"""
Nara voice copilot runtime

Wires microphone capture, the VAD lane, the streaming recognizer, the wake
recognizer and the interaction orchestrator through explicit handles, and
exposes a small Flask control server.
"""
import os
import queue
import threading
import time
from dataclasses import asdict
from typing import Optional

import numpy as np
import psutil
from flask import Flask, jsonify, request
try:
    import sounddevice as sd  # PortAudio bindings
except Exception as _sd_e:  # Guard import failures; allow text-only fallback
    sd = None  # type: ignore

from . import config as CFG
from .audio_interrupt import InterruptiblePlayer
from .content_store import ChapterLoader, JsonContentStore
from .error_handler import (
    ConfigurationError, ContentUnavailable, ErrorSeverity, ServiceError, ServiceTimeout,
    ValidationError, error_context, get_error_handler, handle_error,
)
from .interactions import InteractionManager, InteractionState
from .llm_client import LLMClient
from .logging_utils import setup_logger
from .messages import CancelRequested, SpeechEnded, SpeechStarted
from .models import AnswerResult, AudioFrame, PlaybackContext, PlaybackContextHolder
from .orchestrator import InteractionOrchestrator
from .playback import PlaybackPositionTracker, build_playback_adapter
from .qa_pipeline import AnsweringPipeline, take_notes
from .speech_services import SpeechToTextStream, TextToSpeechClient
from .vad import VADEvent, VADSettings, VADWorker, VoiceActivityDetector
from .validation import get_validator
from .wake_word import WakeWordRecognizer

logger = setup_logger("nara.voice_assistant", "logs/voice_assistant.log")


class VoiceCopilot:
    """Owns every service handle for one listening session"""

    def __init__(self, store, pipeline: AnsweringPipeline, context: PlaybackContextHolder,
                 orchestrator: Optional[InteractionOrchestrator] = None,
                 recognizer: Optional[WakeWordRecognizer] = None, vad_worker: Optional[VADWorker] = None,
                 stt: Optional[SpeechToTextStream] = None, player: Optional[InterruptiblePlayer] = None,
                 tracker: Optional[PlaybackPositionTracker] = None, llm: Optional[LLMClient] = None,
                 sample_rate: int = 16000, frame_ms: int = 20, input_device=None,
                 mute_mic_while_speaking: bool = True, interrupt_threshold: float = 0.08,
                 user_id: str = "default"):
        self.store = store
        self.pipeline = pipeline
        self.context = context
        self.orchestrator = orchestrator
        self.recognizer = recognizer
        self.vad_worker = vad_worker
        self.stt = stt
        self.player = player
        self.tracker = tracker
        self.llm = llm
        self.sample_rate = sample_rate
        self.blocksize = int(sample_rate * frame_ms / 1000)
        self.input_device = input_device
        self.interrupt_threshold = interrupt_threshold
        self.user_id = user_id

        self.audio_q: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=200)
        self.running = False
        self._stream = None
        self._pump_thread: Optional[threading.Thread] = None

        if self.orchestrator is not None and self.recognizer is not None:
            self.orchestrator.manager.register_state_callback(self._sync_recognizer)
        if mute_mic_while_speaking and self.player is not None and self.stt is not None:
            self.player.register_playing_callback(self.stt.set_paused)

    @classmethod
    def build_from_config(cls, audiobook_id: Optional[str] = None, audio: bool = True,
                          user_id: str = "default") -> "VoiceCopilot":
        store = JsonContentStore(CFG.get_dataset_dir())
        audiobook_id = audiobook_id or CFG.get_default_audiobook()
        if not audiobook_id:
            available = store.list_audiobooks()
            if not available:
                raise ConfigurationError(f"No audiobook datasets in {CFG.get_dataset_dir()}",
                                         component="voice_assistant", operation="build")
            audiobook_id = available[0]
        if not store.has_book(audiobook_id):
            raise ConfigurationError(f"Unknown audiobook: {audiobook_id}",
                                     component="voice_assistant", operation="build")

        progress = store.get_progress(user_id, audiobook_id) or 0
        context = PlaybackContextHolder(PlaybackContext(
            audiobook_id=audiobook_id,
            playback_chapter_index=progress,
            listener_progress_chapter_index=progress,
        ))

        llm = LLMClient.from_config()
        loader = ChapterLoader(store, CFG.include_prior_summaries(), CFG.get_prior_summary_count())
        pipeline = AnsweringPipeline.from_config(loader, llm)
        with error_context("voice_assistant", "playback_adapter", ErrorSeverity.CRITICAL, audiobook_id=audiobook_id):
            playback = build_playback_adapter()
        player = InterruptiblePlayer(CFG.get_tts_sample_rate(), CFG.get_audio_output_device())
        orchestrator = InteractionOrchestrator(
            pipeline, playback, TextToSpeechClient.from_config(), player, context,
            manager=InteractionManager(CFG.get_history_size()),
            muted=CFG.is_muted(),
            continuous_listen=CFG.continuous_listen(),
            listen_timeout=CFG.get_listen_timeout_sec(),
            fallback_answer=CFG.get_fallback_answer(),
            seek_to_citation=CFG.seek_to_citation(),
        )
        recognizer = WakeWordRecognizer.from_config(orchestrator.post)
        tracker = PlaybackPositionTracker(playback, context, store.get_chapters(audiobook_id),
                                          CFG.get_playback_poll_interval(), store=store, user_id=user_id)

        copilot = cls(
            store, pipeline, context, orchestrator=orchestrator, recognizer=recognizer,
            player=player, tracker=tracker, llm=llm,
            sample_rate=CFG.get_audio_sample_rate(), frame_ms=CFG.get_audio_frame_ms(),
            input_device=CFG.get_audio_input_device(), interrupt_threshold=CFG.get_interrupt_threshold(),
            user_id=user_id,
        )
        if audio:
            copilot.vad_worker = VADWorker(VoiceActivityDetector(VADSettings.from_config()), copilot._on_vad_event)
            copilot.stt = SpeechToTextStream.from_config(copilot._on_utterance)
            if CFG.mic_mute_while_tts():
                player.register_playing_callback(copilot.stt.set_paused)
        return copilot

    # -- event plumbing ------------------------------------------------------

    def _sync_recognizer(self, old_state: InteractionState, new_state: InteractionState) -> None:
        if new_state is InteractionState.LISTENING:
            self.recognizer.enter_command_mode()
        elif new_state is InteractionState.IDLE:
            self.recognizer.reset()

    def _on_vad_event(self, event: VADEvent, result, frame: AudioFrame) -> None:
        if self.orchestrator is None:
            return
        if event is VADEvent.SPEECH_STARTED:
            if self.player is not None and self.player.is_playing and result.level < self.interrupt_threshold:
                # answer audio picked up by the microphone
                logger.debug(f"Ignoring speech at {result.level:.4f} during playback "
                             f"(interrupt threshold {self.interrupt_threshold})")
                return
            self.orchestrator.post(SpeechStarted(level=result.level))
        else:
            self.orchestrator.post(SpeechEnded())

    def _on_utterance(self, utterance) -> None:
        if self.recognizer is not None:
            self.recognizer.process(utterance)

    def _audio_callback(self, indata, frames, time_info, status):
        if status:
            logger.debug(f"Input stream status: {status}")
        try:
            self.audio_q.put_nowait(indata[:, 0].copy())
        except queue.Full:
            logger.debug("Audio queue full; dropping frame")

    def _pump(self) -> None:
        while self.running:
            try:
                samples = self.audio_q.get(timeout=0.1)
            except queue.Empty:
                continue
            if self.vad_worker is not None:
                self.vad_worker.submit(AudioFrame.from_samples(samples, time.monotonic()))
            if self.stt is not None:
                self.stt.send_audio(samples)

    def trigger_wake(self) -> bool:
        """Manual wake, as if the wake phrase had been heard"""
        if self.recognizer is None:
            return False
        self.recognizer.trigger()
        return True

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        for component in (self.orchestrator, self.vad_worker, self.stt, self.tracker):
            if component is not None:
                component.start()
        self._open_input_stream()
        self._pump_thread = threading.Thread(target=self._pump, name="nara-audio-pump", daemon=True)
        self._pump_thread.start()
        logger.info(f"Nara listening for {self.recognizer.phrase if self.recognizer else 'manual wake'!r}")

    def _open_input_stream(self) -> None:
        try:
            if os.environ.get("NARA_NO_AUDIO") == "1":
                raise RuntimeError("audio disabled via NARA_NO_AUDIO")
            if sd is None:
                raise RuntimeError("sounddevice not available")
            self._stream = sd.InputStream(
                channels=1,
                samplerate=self.sample_rate,
                dtype="float32",
                blocksize=self.blocksize,
                callback=self._audio_callback,
                device=self.input_device,
            )
            self._stream.start()
            logger.info("Audio input stream started")
        except Exception as e:
            self._stream = None
            logger.warning(f"Audio initialization failed; running in text-only mode: {e}")

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning(f"Error closing input stream: {e}")
            self._stream = None
        if self._pump_thread:
            self._pump_thread.join(timeout=1.0)
        for component in (self.tracker, self.stt, self.vad_worker, self.orchestrator):
            if component is not None:
                component.stop()
        if self.recognizer is not None:
            self.recognizer.close()
        if self.player is not None:
            self.player.stop()
        logger.info("Nara stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while self.running:
                time.sleep(0.5)
        except KeyboardInterrupt:
            logger.info("Shutting down on keyboard interrupt")
        finally:
            self.stop()


def _error_response(error: Exception, status: int):
    return jsonify({"ok": False, "error": str(error), "type": error.__class__.__name__}), status


def create_control_app(copilot: VoiceCopilot) -> Flask:
    """Flask control surface: health, info, text questions and session control"""
    control_app = Flask("nara-control")
    validator = get_validator()

    @control_app.route("/health")
    def _control_health():
        state = copilot.orchestrator.state.value if copilot.orchestrator else None
        status = "degraded" if get_error_handler().is_open("orchestrator") else "ok"
        return jsonify({"status": status, "state": state, "timestamp": time.time()})

    @control_app.route("/info")
    def _control_info():
        process = psutil.Process()
        with process.oneshot():
            memory = process.memory_info()
            proc = {
                "pid": process.pid,
                "memory_mb": round(memory.rss / (1024 * 1024), 1),
                "cpu_percent": process.cpu_percent(interval=None),
                "threads": process.num_threads(),
            }
        return jsonify({
            "context": asdict(copilot.context.get()),
            "orchestrator": copilot.orchestrator.get_status() if copilot.orchestrator else None,
            "stt": copilot.stt.get_stats() if copilot.stt else None,
            "vad": dict(copilot.vad_worker.stats) if copilot.vad_worker else None,
            "player": copilot.player.get_playback_status() if copilot.player else None,
            "errors": get_error_handler().get_error_stats(),
            "process": proc,
        })

    @control_app.route("/ask", methods=["POST"])
    def _control_ask():
        try:
            data = validator.validate_request_data(request.get_json(silent=True), ["question"])
            question = validator.validate_question(data["question"])
            context = copilot.context.get()
            if "audiobook_id" in data:
                context.audiobook_id = validator.validate_audiobook_id(data["audiobook_id"])
            if "chapter_index" in data:
                context.playback_chapter_index = validator.validate_chapter_index(data["chapter_index"])
            if "progress_chapter_index" in data:
                context.listener_progress_chapter_index = validator.validate_chapter_index(
                    data["progress_chapter_index"], "progress_chapter_index")
            mode = data.get("mode")
        except ValidationError as e:
            return _error_response(e, 400)

        if not copilot.store.has_book(context.audiobook_id):
            return jsonify({"ok": False, "error": f"Unknown audiobook: {context.audiobook_id}"}), 404

        try:
            result = copilot.pipeline.ask(question, context, mode_hint=mode)
        except ValueError as e:
            return _error_response(e, 400)
        except ContentUnavailable as e:
            logger.warning(f"/ask content unavailable: {e}")
            fallback = copilot.orchestrator.fallback_answer if copilot.orchestrator else CFG.get_fallback_answer()
            result = AnswerResult(markdown=fallback, fallback=True)
        except ServiceTimeout as e:
            handle_error(e, "control", "ask", ErrorSeverity.MEDIUM)
            return _error_response(e, 504)
        except ServiceError as e:
            handle_error(e, "control", "ask", ErrorSeverity.HIGH)
            return _error_response(e, 502)
        return jsonify({"ok": True, **result.to_dict()})

    @control_app.route("/context", methods=["POST"])
    def _control_context():
        try:
            data = validator.validate_request_data(request.get_json(silent=True))
            changes = {}
            if "audiobook_id" in data:
                changes["audiobook_id"] = validator.validate_audiobook_id(data["audiobook_id"])
            if "position_seconds" in data:
                changes["current_position_seconds"] = validator.validate_position(data["position_seconds"])
            if "chapter_index" in data:
                changes["playback_chapter_index"] = validator.validate_chapter_index(data["chapter_index"])
            if "progress_chapter_index" in data:
                changes["listener_progress_chapter_index"] = validator.validate_chapter_index(
                    data["progress_chapter_index"], "progress_chapter_index")
        except ValidationError as e:
            return _error_response(e, 400)

        audiobook_id = changes.get("audiobook_id")
        if audiobook_id is not None and not copilot.store.has_book(audiobook_id):
            return jsonify({"ok": False, "error": f"Unknown audiobook: {audiobook_id}"}), 404

        context = copilot.context.update(**changes)
        if "listener_progress_chapter_index" in changes:
            copilot.store.set_progress(copilot.user_id, context.audiobook_id,
                                       context.listener_progress_chapter_index)
        if audiobook_id is not None and copilot.tracker is not None:
            copilot.tracker.chapters = copilot.store.get_chapters(audiobook_id)
        return jsonify({"ok": True, "context": asdict(context)})

    @control_app.route("/wake", methods=["POST"])
    def _control_wake():
        if not copilot.trigger_wake():
            return jsonify({"ok": False, "error": "wake recognizer not running"}), 503
        return jsonify({"ok": True})

    @control_app.route("/interrupt", methods=["POST"])
    def _control_interrupt():
        if copilot.orchestrator is None:
            return jsonify({"ok": False, "error": "orchestrator not running"}), 503
        accepted = copilot.orchestrator.dispatch(CancelRequested(reason="control interrupt"))
        return jsonify({"ok": True, "interrupted": accepted, "state": copilot.orchestrator.state.value})

    @control_app.route("/notes", methods=["POST"])
    def _control_notes():
        if copilot.llm is None:
            return jsonify({"ok": False, "error": "language model not configured"}), 503
        data = request.get_json(silent=True) or {}
        transcript = data.get("transcript")
        if transcript is None and copilot.orchestrator is not None:
            transcript = copilot.orchestrator.manager.recent_transcript()
        if not isinstance(transcript, str):
            return jsonify({"ok": False, "error": "transcript must be a string"}), 400
        return jsonify({"ok": True, "notes": take_notes(copilot.llm, transcript)})

    return control_app


def start_control_server(copilot: VoiceCopilot) -> Optional[threading.Thread]:
    host, port = CFG.get_control_host_port()
    control_app = create_control_app(copilot)

    def _run_control():
        try:
            control_app.run(host=host, port=port, debug=False, use_reloader=False)
        except Exception as e:
            logger.warning(f"Control server failed to start: {e}")

    thread = threading.Thread(target=_run_control, name="nara-control", daemon=True)
    thread.start()
    logger.info(f"Control server on http://{host}:{port}")
    return thread


def main(audiobook_id: Optional[str] = None) -> None:
    copilot = VoiceCopilot.build_from_config(audiobook_id)
    if copilot.llm is not None and not copilot.llm.check_health():
        logger.warning("Language model server is not reachable; answers will fail until it is up")
    start_control_server(copilot)
    copilot.run_forever()


if __name__ == "__main__":
    main()
