#!/usr/bin/env python3
"""
Nara Voice Activity Detection

Energy-based speech detector with an adaptive noise floor and window
hysteresis. The detector itself is a plain synchronous object; VADWorker runs
it on its own thread so the capture callback only ever enqueues frames.
"""
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Optional

import numpy as np

from . import config as CFG
from .logging_utils import setup_logger
from .models import AudioFrame

logger = setup_logger("nara.vad", "logs/vad.log")


class VADEvent(Enum):
    SPEECH_STARTED = "speech_started"
    SPEECH_ENDED = "speech_ended"


@dataclass
class VADResult:
    level: float
    event: Optional[VADEvent] = None
    is_speech: bool = False
    threshold: Optional[float] = None


@dataclass
class VADSettings:
    static_threshold: float = 0.02
    noise_multiplier: float = 2.5
    calibration_frames: int = 50
    speech_frames: int = 6
    total_frames: int = 10
    debounce_sec: float = 0.25
    noise_decay: float = 0.99

    @classmethod
    def from_config(cls) -> "VADSettings":
        return cls(
            static_threshold=CFG.get_vad_static_threshold(),
            noise_multiplier=CFG.get_vad_noise_multiplier(),
            calibration_frames=CFG.get_vad_calibration_frames(),
            speech_frames=CFG.get_vad_speech_frames(),
            total_frames=CFG.get_vad_total_frames(),
            debounce_sec=CFG.get_vad_debounce_sec(),
            noise_decay=CFG.get_vad_noise_decay(),
        )


@dataclass
class SpeechState:
    """Mutable per-session detector state"""
    recent: Deque[bool] = field(default_factory=deque)
    background_noise: float = 0.0
    in_speech: bool = False
    last_transition_time: Optional[float] = None
    last_speech_end: Optional[float] = None
    calibrated_frames: int = 0


def frame_level(samples: np.ndarray) -> float:
    """RMS level of a block of float samples"""
    flat = np.asarray(samples, dtype=np.float32).ravel()
    if flat.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(flat ** 2)))


class VoiceActivityDetector:
    """Classifies frames as speech/silence and raises start/end events"""

    def __init__(self, settings: Optional[VADSettings] = None):
        self.settings = settings or VADSettings()
        if self.settings.speech_frames > self.settings.total_frames:
            raise ValueError("speech_frames must not exceed total_frames")
        self.state = SpeechState(recent=deque(maxlen=self.settings.total_frames))

    def reset(self) -> None:
        self.state = SpeechState(recent=deque(maxlen=self.settings.total_frames))

    @property
    def calibrated(self) -> bool:
        return self.state.calibrated_frames >= self.settings.calibration_frames

    @property
    def threshold(self) -> float:
        return max(self.settings.static_threshold,
                   self.state.background_noise * self.settings.noise_multiplier)

    def process_frame(self, frame: AudioFrame) -> VADResult:
        level = frame.level if frame.level else frame_level(frame.samples)
        st = self.state
        s = self.settings

        if st.calibrated_frames < s.calibration_frames:
            st.background_noise = (st.background_noise * st.calibrated_frames + level) / (st.calibrated_frames + 1)
            st.calibrated_frames += 1
            return VADResult(level=level)

        threshold = self.threshold
        is_speech = level > threshold
        st.recent.append(is_speech)

        result = VADResult(level=level, is_speech=is_speech, threshold=threshold)

        if len(st.recent) == s.total_frames:
            speech_count = sum(st.recent)
            if not st.in_speech and speech_count >= s.speech_frames:
                if st.last_speech_end is None or frame.timestamp - st.last_speech_end > s.debounce_sec:
                    st.in_speech = True
                    st.last_transition_time = frame.timestamp
                    result.event = VADEvent.SPEECH_STARTED
            elif st.in_speech and speech_count == 0:
                st.in_speech = False
                st.last_transition_time = frame.timestamp
                st.last_speech_end = frame.timestamp
                result.event = VADEvent.SPEECH_ENDED

        # Only silence feeds the noise floor so the listener's voice never raises it
        if not is_speech:
            st.background_noise = st.background_noise * s.noise_decay + level * (1.0 - s.noise_decay)

        return result


class VADWorker:
    """Runs a detector on a dedicated thread fed by a bounded frame queue"""

    def __init__(self, detector: VoiceActivityDetector,
                 on_event: Callable[[VADEvent, VADResult, AudioFrame], None],
                 max_queue: int = 500):
        self.detector = detector
        self.on_event = on_event
        self.frames: "queue.Queue[AudioFrame]" = queue.Queue(maxsize=max_queue)
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self.stats: Dict[str, int] = {"processed": 0, "dropped": 0, "events": 0}

    def start(self) -> None:
        if self.running:
            return
        self.detector.reset()
        self.running = True
        self._thread = threading.Thread(target=self._run, name="nara-vad", daemon=True)
        self._thread.start()
        logger.info("VAD lane started")

    def stop(self, timeout: float = 1.0) -> None:
        self.running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        self.detector.reset()
        logger.info("VAD lane stopped")

    def submit(self, frame: AudioFrame) -> None:
        """Enqueue a frame without blocking; the oldest frame is dropped when full."""
        try:
            self.frames.put_nowait(frame)
        except queue.Full:
            try:
                self.frames.get_nowait()
            except queue.Empty:
                pass
            self.stats["dropped"] += 1
            try:
                self.frames.put_nowait(frame)
            except queue.Full:
                self.stats["dropped"] += 1

    def _run(self) -> None:
        while self.running:
            try:
                frame = self.frames.get(timeout=0.1)
            except queue.Empty:
                continue
            result = self.detector.process_frame(frame)
            self.stats["processed"] += 1
            if result.event is None:
                continue
            self.stats["events"] += 1
            logger.debug(f"VAD {result.event.value} level={result.level:.4f} threshold={result.threshold:.4f}")
            try:
                self.on_event(result.event, result, frame)
            except Exception as e:
                logger.error(f"VAD event handler failed: {e}")


__all__ = ["VADEvent", "VADResult", "VADSettings", "SpeechState", "VoiceActivityDetector", "VADWorker", "frame_level"]
