#!/usr/bin/env python3
"""
Nara background playback control

Adapters pause, resume and seek the audiobook player. The Spotify adapter
drives the Web API player endpoints and retries transient failures. The
position tracker follows adapters that report a real position and advances
listener progress as the book plays.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import requests

from . import config as CFG
from .content_store import resolve_chapter_index
from .error_handler import ConfigurationError, ServiceError, ServiceTimeout
from .logging_utils import setup_logger
from .models import Chapter, PlaybackContextHolder

logger = setup_logger("nara.playback", "logs/playback.log")


@dataclass(frozen=True)
class PlaybackState:
    is_playing: bool
    position_seconds: float


class PlaybackAdapter:
    """Interface for the background audio source"""

    # False when get_state() does not follow the real player
    reports_position = True

    def pause(self) -> None:
        raise NotImplementedError

    def resume(self) -> None:
        raise NotImplementedError

    def seek(self, position_seconds: float) -> None:
        raise NotImplementedError

    def get_state(self) -> PlaybackState:
        raise NotImplementedError


class NullPlaybackAdapter(PlaybackAdapter):
    """Records calls and tracks a simulated position; used in text-only mode"""

    def __init__(self, position_seconds: float = 0.0, playing: bool = True, reports_position: bool = False):
        self.reports_position = reports_position
        self.calls: List[Tuple[str, Optional[float]]] = []
        self._position = position_seconds
        self._playing = playing
        self._lock = threading.Lock()

    def pause(self) -> None:
        with self._lock:
            self.calls.append(("pause", None))
            self._playing = False

    def resume(self) -> None:
        with self._lock:
            self.calls.append(("resume", None))
            self._playing = True

    def seek(self, position_seconds: float) -> None:
        with self._lock:
            self.calls.append(("seek", position_seconds))
            self._position = position_seconds

    def get_state(self) -> PlaybackState:
        with self._lock:
            return PlaybackState(self._playing, self._position)


class SpotifyPlaybackAdapter(PlaybackAdapter):
    """Spotify Web API player control with bounded retries"""

    def __init__(self, access_token: str, api_base: str = "https://api.spotify.com/v1",
                 device_id: Optional[str] = None, max_retries: int = 3,
                 pause_retry_delay: float = 0.1, resume_retry_delay: float = 0.25,
                 timeout: float = 5.0, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if max_retries < 0:
            raise ConfigurationError(f"max_retries must be non-negative, got {max_retries}",
                                     component="playback", operation="init")
        self.access_token = access_token
        self.api_base = api_base.rstrip("/")
        self.device_id = device_id
        self.max_retries = max_retries
        self.pause_retry_delay = pause_retry_delay
        self.resume_retry_delay = resume_retry_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep

    @classmethod
    def from_config(cls) -> "SpotifyPlaybackAdapter":
        token = CFG.get_spotify_access_token()
        if not token:
            raise ServiceError("Spotify access token not configured", component="playback", operation="init")
        return cls(
            access_token=token,
            api_base=CFG.get_spotify_api_base(),
            device_id=CFG.get_spotify_device_id(),
            max_retries=CFG.get_playback_max_retries(),
            pause_retry_delay=CFG.get_pause_retry_delay(),
            resume_retry_delay=CFG.get_resume_retry_delay(),
            timeout=CFG.get_playback_timeout(),
        )

    def _request(self, method: str, path: str, params: Optional[dict] = None) -> requests.Response:
        params = dict(params or {})
        if self.device_id:
            params["device_id"] = self.device_id
        try:
            return self.session.request(
                method,
                f"{self.api_base}{path}",
                params=params,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ServiceTimeout(f"Spotify {path} timed out", component="playback", operation=path) from e
        except requests.exceptions.RequestException as e:
            raise ServiceError(f"Spotify {path} failed: {e}", component="playback", operation=path) from e

    def _command(self, operation: str, method: str, path: str, delay: float,
                 params: Optional[dict] = None) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = self._request(method, path, params)
                # 403 means the player is already in the requested state
                if response.status_code in (200, 202, 204) or (response.status_code == 403 and operation != "seek"):
                    if attempt:
                        logger.info(f"Spotify {operation} succeeded after {attempt} retries")
                    return
                last_error = ServiceError(
                    f"Spotify {operation} returned {response.status_code}",
                    component="playback", operation=operation, status=response.status_code,
                )
                if response.status_code == 401:
                    break
            except ServiceError as e:
                last_error = e
            if attempt < self.max_retries:
                logger.warning(f"Spotify {operation} failed, retry {attempt + 1}/{self.max_retries}: {last_error}")
                self.sleep(delay)
        if last_error is None:
            raise ServiceError(f"Spotify {operation} was not attempted", component="playback", operation=operation)
        raise last_error

    def pause(self) -> None:
        self._command("pause", "PUT", "/me/player/pause", self.pause_retry_delay)

    def resume(self) -> None:
        self._command("resume", "PUT", "/me/player/play", self.resume_retry_delay)

    def seek(self, position_seconds: float) -> None:
        self._command("seek", "PUT", "/me/player/seek", self.resume_retry_delay,
                      params={"position_ms": int(max(0.0, position_seconds) * 1000)})

    def get_state(self) -> PlaybackState:
        response = self._request("GET", "/me/player")
        if response.status_code == 204:
            return PlaybackState(False, 0.0)
        if response.status_code != 200:
            raise ServiceError(f"Spotify player state returned {response.status_code}",
                               component="playback", operation="get_state")
        data = response.json() or {}
        return PlaybackState(bool(data.get("is_playing")), float(data.get("progress_ms") or 0) / 1000.0)


def build_playback_adapter() -> PlaybackAdapter:
    provider = CFG.get_playback_provider()
    if provider == "spotify":
        return SpotifyPlaybackAdapter.from_config()
    return NullPlaybackAdapter()


class PlaybackPositionTracker:
    """Polls the player and keeps the playback context's position and chapter current.

    Listener progress only moves forward: reaching a later chapter raises it and
    saves it to the store. Adapters that do not report a real position are not
    polled, so context set through the control server stays as written.
    """

    def __init__(self, playback: PlaybackAdapter, context: PlaybackContextHolder,
                 chapters: List[Chapter], interval: float = 2.0, store=None, user_id: str = "default"):
        self.playback = playback
        self.context = context
        self.chapters = chapters
        self.interval = interval
        self.store = store
        self.user_id = user_id
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> Optional[PlaybackState]:
        if not getattr(self.playback, "reports_position", True):
            return None
        try:
            state = self.playback.get_state()
        except ServiceError as e:
            logger.debug(f"Playback poll failed: {e}")
            return None
        changes = {"current_position_seconds": state.position_seconds}
        chapter = resolve_chapter_index(self.chapters, state.position_seconds)
        before = self.context.get()
        if chapter is not None:
            changes["playback_chapter_index"] = chapter
            if chapter > before.listener_progress_chapter_index:
                changes["listener_progress_chapter_index"] = chapter
        context = self.context.update(**changes)
        if "listener_progress_chapter_index" in changes:
            logger.info(f"Listener progress advanced to chapter {chapter} of {context.audiobook_id}")
            if self.store is not None:
                self.store.set_progress(self.user_id, context.audiobook_id, chapter)
        return state

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="nara-playback-poll", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll_once()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval + 1.0)
        self._thread = None


__all__ = [
    "PlaybackState", "PlaybackAdapter", "NullPlaybackAdapter", "SpotifyPlaybackAdapter",
    "PlaybackPositionTracker", "build_playback_adapter",
]
