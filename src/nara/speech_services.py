#!/usr/bin/env python3
"""
Nara speech services

- TextToSpeechClient: HTTP speech synthesis, yielded as float32 chunks while
  the response streams in.
- SpeechToTextStream: websocket streaming recognizer. Microphone frames go
  out as 16-bit PCM, transcript events come back as JSON and are turned into
  Utterance objects.
"""
import io
import json
import threading
import time
from typing import Callable, Dict, Iterator, Optional
from urllib.parse import urlencode

import numpy as np
import requests
import soundfile as sf
from websockets.sync.client import connect as ws_connect

from . import config as CFG
from .error_handler import ServiceError, ServiceTimeout
from .interactions import CancelToken
from .logging_utils import setup_logger
from .models import Role, Utterance

logger = setup_logger("nara.speech_services", "logs/speech.log")

_RAW_PCM_TYPES = ("audio/pcm", "audio/l16", "audio/raw", "application/octet-stream")
_SYSTEM_SPEAKERS = {"assistant", "system", "tts", "nara"}


def pcm16_to_float32(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def float32_to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(np.asarray(samples, dtype=np.float32).ravel(), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


class TextToSpeechClient:
    """OpenAI-style /v1/audio/speech client"""

    def __init__(self, server_url: str, voice: str = "default", speed: float = 1.0,
                 sample_rate: int = 24000, timeout: float = 15.0, connect_timeout: float = 5.0,
                 chunk_bytes: int = 4800, session: Optional[requests.Session] = None):
        self.server_url = server_url
        self.voice = voice
        self.speed = speed
        self.sample_rate = sample_rate
        self.timeout = timeout
        self.connect_timeout = min(connect_timeout, timeout)
        self.chunk_bytes = chunk_bytes
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls) -> "TextToSpeechClient":
        return cls(
            server_url=CFG.get_tts_server_url(),
            voice=CFG.get_tts_voice(),
            speed=CFG.get_tts_speed(),
            sample_rate=CFG.get_tts_sample_rate(),
            timeout=CFG.get_tts_timeout(),
        )

    def stream(self, text: str, cancel: Optional[CancelToken] = None) -> Iterator[np.ndarray]:
        """Yield float32 mono chunks; stops quietly once cancelled"""
        if cancel is not None:
            cancel.raise_if_cancelled("tts", "stream")
        payload = {
            "input": text,
            "voice": self.voice,
            "speed": self.speed,
            "response_format": "pcm",
            "sample_rate": self.sample_rate,
        }
        try:
            response = self.session.post(self.server_url, json=payload, stream=True,
                                         timeout=(self.connect_timeout, self.timeout))
        except requests.exceptions.Timeout as e:
            raise ServiceTimeout(f"TTS timed out after {self.timeout}s", component="tts", operation="stream") from e
        except requests.exceptions.RequestException as e:
            raise ServiceError(f"TTS request failed: {e}", component="tts", operation="stream") from e

        unregister = cancel.add_callback(response.close) if cancel is not None else None
        try:
            with response:
                if response.status_code >= 400:
                    raise ServiceError(f"TTS error {response.status_code}", component="tts",
                                       operation="stream", status=response.status_code)
                content_type = response.headers.get("Content-Type", "audio/pcm").split(";")[0].strip().lower()
                if content_type in _RAW_PCM_TYPES:
                    yield from self._iter_pcm(response, cancel)
                else:
                    yield self._decode_container(response.content)
        except requests.exceptions.Timeout as e:
            if cancel is not None and cancel.cancelled:
                return
            raise ServiceTimeout(f"TTS stalled for more than {self.timeout}s",
                                 component="tts", operation="stream") from e
        except (requests.exceptions.RequestException, OSError, AttributeError, ValueError) as e:
            if cancel is not None and cancel.cancelled:
                return
            raise ServiceError(f"TTS stream failed: {e}", component="tts", operation="stream") from e
        finally:
            if unregister is not None:
                unregister()

    def _iter_pcm(self, response, cancel: Optional[CancelToken]) -> Iterator[np.ndarray]:
        leftover = b""
        for data in response.iter_content(chunk_size=self.chunk_bytes):
            if cancel is not None and cancel.cancelled:
                return
            if not data:
                continue
            data = leftover + data
            usable = len(data) - (len(data) % 2)
            leftover = data[usable:]
            if usable:
                yield pcm16_to_float32(data[:usable])

    def _decode_container(self, body: bytes) -> np.ndarray:
        try:
            samples, rate = sf.read(io.BytesIO(body), dtype="float32")
        except RuntimeError as e:
            raise ServiceError(f"Undecodable TTS audio: {e}", component="tts", operation="decode") from e
        if samples.ndim > 1:
            samples = samples.mean(axis=1)
        if rate != self.sample_rate:
            logger.warning(f"TTS returned {rate} Hz audio, player expects {self.sample_rate} Hz")
        return samples.astype(np.float32)

    def close(self) -> None:
        self.session.close()


def parse_transcript_event(raw) -> Optional[Utterance]:
    """Utterance for one recognizer JSON event, or None for non-transcript events"""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-JSON STT message: {str(raw)[:80]!r}")
        return None
    if not isinstance(data, dict) or not isinstance(data.get("text"), str):
        return None
    speaker = str(data.get("speaker") or data.get("role") or "listener").lower()
    role = Role.SYSTEM if speaker in _SYSTEM_SPEAKERS else Role.LISTENER
    try:
        confidence = float(data.get("confidence", 1.0))
    except (TypeError, ValueError):
        confidence = 1.0
    return Utterance(
        text=data["text"],
        is_final=bool(data.get("is_final", False)),
        confidence=max(0.0, min(1.0, confidence)),
        timestamp=float(data.get("timestamp") or time.time()),
        role=role,
    )


class SpeechToTextStream:
    """Streaming recognizer connection with reconnect and mic muting"""

    def __init__(self, url: str, on_utterance: Callable[[Utterance], None], sample_rate: int = 16000,
                 language: str = "en", api_key: Optional[str] = None, open_timeout: float = 5.0,
                 reconnect_initial: float = 0.5, reconnect_max: float = 5.0, connect=ws_connect):
        self.url = url
        self.on_utterance = on_utterance
        self.sample_rate = sample_rate
        self.language = language
        self.api_key = api_key
        self.open_timeout = open_timeout
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self._connect = connect

        self.running = False
        self.connected = False
        self.paused = False
        self.frames_sent = 0
        self.frames_dropped = 0
        self._ws = None
        self._send_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, on_utterance: Callable[[Utterance], None]) -> "SpeechToTextStream":
        return cls(
            url=CFG.get_stt_url(),
            on_utterance=on_utterance,
            sample_rate=CFG.get_audio_sample_rate(),
            language=CFG.get_stt_language(),
            api_key=CFG.get_stt_api_key(),
            open_timeout=CFG.get_stt_timeout(),
        )

    def stream_url(self) -> str:
        query = urlencode({"sample_rate": self.sample_rate, "encoding": "pcm_s16le", "language": self.language})
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{query}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._thread = threading.Thread(target=self._run, name="nara-stt", daemon=True)
        self._thread.start()
        logger.info(f"STT stream starting ({self.url})")

    def stop(self) -> None:
        self.running = False
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as e:
                logger.debug(f"STT close failed: {e}")
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self.connected = False
        logger.info("STT stream stopped")

    def set_paused(self, paused: bool) -> None:
        """Stop forwarding microphone audio, e.g. while answer audio plays"""
        self.paused = paused

    def send_audio(self, samples: np.ndarray) -> bool:
        if self.paused or not self.connected or self._ws is None:
            self.frames_dropped += 1
            return False
        try:
            with self._send_lock:
                self._ws.send(float32_to_pcm16(samples))
            self.frames_sent += 1
            return True
        except Exception as e:
            logger.warning(f"STT send failed: {e}")
            self.frames_dropped += 1
            return False

    def _run(self) -> None:
        backoff = self.reconnect_initial
        while self.running:
            try:
                self._ws = self._connect(self.stream_url(), open_timeout=self.open_timeout,
                                         additional_headers=self._headers())
                self.connected = True
                backoff = self.reconnect_initial
                logger.info("STT stream connected")
                for raw in self._ws:
                    if not self.running:
                        break
                    utterance = parse_transcript_event(raw)
                    if utterance is not None:
                        self.on_utterance(utterance)
            except Exception as e:
                logger.warning(f"STT connection failed or closed: {e}")
            finally:
                self.connected = False
                ws, self._ws = self._ws, None
                if ws is not None:
                    try:
                        ws.close()
                    except Exception as e:
                        logger.debug(f"STT close failed: {e}")
            if self.running:
                time.sleep(backoff)
                backoff = min(self.reconnect_max, backoff * 2)

    def get_stats(self) -> dict:
        return {
            "connected": self.connected,
            "paused": self.paused,
            "frames_sent": self.frames_sent,
            "frames_dropped": self.frames_dropped,
        }


__all__ = [
    "TextToSpeechClient", "SpeechToTextStream", "parse_transcript_event",
    "pcm16_to_float32", "float32_to_pcm16",
]
