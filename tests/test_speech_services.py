import io
import json
import os
import sys

import numpy as np
import pytest
import soundfile as sf

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara.error_handler import ServiceError
from nara.interactions import CancelToken
from nara.models import Role
from nara.speech_services import (
    SpeechToTextStream, TextToSpeechClient, float32_to_pcm16, parse_transcript_event, pcm16_to_float32,
)


class FakeAudioResponse:
    def __init__(self, chunks=(), content=b"", content_type="audio/pcm", status_code=200):
        self.chunks = list(chunks)
        self.content = content
        self.headers = {"Content-Type": content_type}
        self.status_code = status_code
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def iter_content(self, chunk_size=None):
        for chunk in self.chunks:
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self.response


def _tts(response):
    return TextToSpeechClient("http://localhost:8880/v1/audio/speech", voice="af_heart", session=FakeSession(response))


def test_pcm_conversion():
    samples = np.array([0.0, 0.5, -0.5, 2.0], dtype=np.float32)
    data = float32_to_pcm16(samples)
    decoded = pcm16_to_float32(data)
    assert len(data) == 8
    assert decoded[1] == pytest.approx(0.5, abs=1e-3)
    assert decoded[3] == pytest.approx(1.0, abs=1e-3)


def test_tts_streams_pcm_across_odd_chunk_boundaries():
    response = FakeAudioResponse(chunks=[b"\x00\x40\x00", b"", b"\xc0"])
    client = _tts(response)

    chunks = list(client.stream("Vertical progress."))

    assert [c.tolist() for c in chunks] == [[0.5], [-0.5]]
    payload = client.session.posts[0][1]["json"]
    assert payload["input"] == "Vertical progress."
    assert payload["voice"] == "af_heart"
    assert payload["response_format"] == "pcm"
    assert response.closed


def test_tts_decodes_wav_to_mono():
    buffer = io.BytesIO()
    stereo = np.tile(np.array([[0.25, 0.75]], dtype=np.float32), (100, 1))
    sf.write(buffer, stereo, 24000, format="WAV", subtype="PCM_16")

    chunks = list(_tts(FakeAudioResponse(content=buffer.getvalue(), content_type="audio/wav")).stream("hi"))

    assert len(chunks) == 1
    assert chunks[0].shape == (100,)
    assert chunks[0][0] == pytest.approx(0.5, abs=1e-3)


def test_tts_error_status():
    with pytest.raises(ServiceError):
        list(_tts(FakeAudioResponse(status_code=503)).stream("hi"))


def test_tts_stops_when_cancelled():
    token = CancelToken()
    response = FakeAudioResponse(chunks=[b"\x00\x40", b"\x00\x40"])
    stream = _tts(response).stream("hi", token)

    assert next(stream).tolist() == [0.5]
    token.cancel("barge-in")
    assert list(stream) == []
    assert response.closed


def test_parse_transcript_event_roles():
    listener = parse_transcript_event(json.dumps({"text": "hey nara", "is_final": True, "confidence": 1.7}))
    system = parse_transcript_event(json.dumps({"text": "Chapter one says", "is_final": True, "speaker": "tts"}))

    assert listener.role is Role.LISTENER
    assert listener.is_final
    assert listener.confidence == 1.0
    assert system.role is Role.SYSTEM
    assert parse_transcript_event("not json") is None
    assert parse_transcript_event(json.dumps({"type": "keepalive"})) is None


class FakeWebSocket:
    def __init__(self, messages):
        self.messages = messages
        self.sent = []
        self.closed = False

    def __iter__(self):
        return iter(self.messages)

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.closed = True


def test_stt_url_and_paused_frames_are_dropped():
    stt = SpeechToTextStream("ws://localhost:9000/stream?model=base", lambda u: None)
    assert stt.stream_url() == "ws://localhost:9000/stream?model=base&sample_rate=16000&encoding=pcm_s16le&language=en"

    stt._ws = FakeWebSocket([])
    stt.connected = True
    assert stt.send_audio(np.zeros(160, dtype=np.float32))
    stt.set_paused(True)
    assert not stt.send_audio(np.zeros(160, dtype=np.float32))
    assert stt.get_stats()["frames_sent"] == 1
    assert stt.get_stats()["frames_dropped"] == 1
    assert len(stt._ws.sent[0]) == 320


def test_stt_reader_delivers_utterances_and_reconnects():
    received = []
    sockets = [FakeWebSocket([json.dumps({"text": "what is", "is_final": False}),
                              json.dumps({"text": "what is zero to one", "is_final": True})])]
    attempts = []

    def connect(url, open_timeout=None, additional_headers=None):
        attempts.append(additional_headers)
        if sockets:
            return sockets.pop(0)
        stt.running = False
        raise OSError("connection refused")

    stt = SpeechToTextStream("ws://localhost:9000/stream", received.append, api_key="k",
                             reconnect_initial=0.0, connect=connect)
    stt.running = True
    stt._run()

    assert [u.text for u in received] == ["what is", "what is zero to one"]
    assert attempts[0] == {"Authorization": "Bearer k"}
    assert len(attempts) == 2
    assert not stt.connected
