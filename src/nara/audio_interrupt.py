#!/usr/bin/env python3
"""
Nara interruptible audio output
Plays synthesized speech as it streams in and stops mid-chunk on barge-in
"""
import os
import threading
import time
from typing import Callable, Iterable, List, Optional

import numpy as np
try:
    import sounddevice as sd  # PortAudio bindings
except Exception as _sd_e:  # Guard import failures; allow text-only fallback
    sd = None  # type: ignore

from .interactions import CancelToken
from .logging_utils import setup_logger

logger = setup_logger("nara.audio_interrupt", "logs/audio_interrupt.log")


class InterruptiblePlayer:
    """Streams float32 mono audio to the output device with interruption"""

    def __init__(self, sample_rate: int = 24000, output_device=None, block_ms: int = 50):
        self.sample_rate = sample_rate
        self.output_device = output_device  # sd device index or name
        self.blocksize = int(sample_rate * block_ms / 1000)
        self.current_stream = None
        self.is_playing = False
        self.interrupt_requested = False
        self.interrupt_callbacks: List[Callable[[], None]] = []
        self.playing_changed_callbacks: List[Callable[[bool], None]] = []

        self.audio_buffer = np.array([], dtype=np.float32)
        self.buffer_lock = threading.Lock()
        self._input_done = threading.Event()
        self._drained = threading.Event()

    def register_playing_callback(self, callback: Callable[[bool], None]) -> None:
        """Called with True when speech output starts and False when it stops"""
        self.playing_changed_callbacks.append(callback)

    def _set_playing(self, playing: bool) -> None:
        if self.is_playing == playing:
            return
        self.is_playing = playing
        for callback in list(self.playing_changed_callbacks):
            try:
                callback(playing)
            except Exception as e:
                logger.error(f"Playing-state callback error: {e}")

    def play_stream(self, chunks: Iterable[np.ndarray], cancel: Optional[CancelToken] = None) -> bool:
        """
        Play audio chunks as they arrive

        Args:
            chunks: iterable of float32 mono sample arrays
            cancel: token that stops playback when cancelled

        Returns:
            bool: True if playback completed, False if interrupted
        """
        if os.environ.get("NARA_NO_AUDIO", "0") == "1" or sd is None:
            reason = "NARA_NO_AUDIO=1 set" if sd is not None else "sounddevice not available"
            logger.info(f"{reason}; consuming audio without playback")
            return self._consume(chunks, cancel)

        self.interrupt_requested = False
        self._input_done.clear()
        self._drained.clear()
        with self.buffer_lock:
            self.audio_buffer = np.array([], dtype=np.float32)
        unregister = cancel.add_callback(self.interrupt) if cancel is not None else None

        try:
            self.current_stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=self.blocksize,
                callback=self._audio_callback,
                device=self.output_device,
            )
            self._set_playing(True)
            with self.current_stream:
                for chunk in chunks:
                    if self.interrupt_requested:
                        break
                    samples = np.asarray(chunk, dtype=np.float32).ravel()
                    with self.buffer_lock:
                        self.audio_buffer = np.concatenate([self.audio_buffer, samples])
                self._input_done.set()
                while not self.interrupt_requested and not self._drained.wait(0.05):
                    pass
        finally:
            if unregister is not None:
                unregister()
            self.current_stream = None
            self._set_playing(False)

        return not self.interrupt_requested

    def _consume(self, chunks: Iterable[np.ndarray], cancel: Optional[CancelToken]) -> bool:
        self.interrupt_requested = False
        self._set_playing(True)
        try:
            for _ in chunks:
                if self.interrupt_requested or (cancel is not None and cancel.cancelled):
                    return False
            return True
        finally:
            self._set_playing(False)

    def _audio_callback(self, outdata: np.ndarray, frames: int, time_info, status):
        if self.interrupt_requested:
            outdata.fill(0)
            return
        with self.buffer_lock:
            chunk = self.audio_buffer[:frames]
            self.audio_buffer = self.audio_buffer[len(chunk):]
            empty = len(self.audio_buffer) == 0
        if len(chunk) < frames:
            outdata.fill(0)
            outdata[:len(chunk), 0] = chunk
            if empty and self._input_done.is_set():
                self._drained.set()
        else:
            outdata[:, 0] = chunk

    def interrupt(self) -> None:
        """Stop current playback immediately"""
        if self.is_playing:
            logger.info("Audio playback interruption requested")
        self.interrupt_requested = True
        with self.buffer_lock:
            self.audio_buffer = np.array([], dtype=np.float32)
        stream = self.current_stream
        if stream is not None:
            try:
                stream.abort()
            except Exception as e:
                logger.error(f"Error stopping audio stream: {e}")
        for callback in list(self.interrupt_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error(f"Interrupt callback error: {e}")

    def stop(self) -> None:
        self.interrupt()
        deadline = time.time() + 1.0
        while self.is_playing and time.time() < deadline:
            time.sleep(0.01)

    def get_playback_status(self) -> dict:
        with self.buffer_lock:
            buffered = len(self.audio_buffer)
        return {
            "is_playing": self.is_playing,
            "interrupt_requested": self.interrupt_requested,
            "buffer_size": buffered,
            "sample_rate": self.sample_rate,
        }


__all__ = ["InterruptiblePlayer"]
