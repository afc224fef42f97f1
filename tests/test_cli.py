import json
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from nara import cli
from nara.error_handler import ConfigurationError, ContentUnavailable
from nara.models import AnswerResult, Citation, PlaybackContext, PlaybackContextHolder, PlaybackHint
from nara.voice_assistant import VoiceCopilot


class FakePipeline:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def ask(self, question, context, cancel=None, mode_hint=None, interaction_id=None):
        self.calls.append((question, context, mode_hint))
        if self.error is not None:
            raise self.error
        return AnswerResult(markdown="Vertical progress.", citations=[Citation("time", "[t=05:40]")],
                            playback_hint=PlaybackHint(1, 340.0))


def _patch_copilot(monkeypatch, pipeline):
    def build(audiobook_id=None, audio=True, user_id="default"):
        context = PlaybackContextHolder(PlaybackContext(audiobook_id or "zero_to_one"))
        return VoiceCopilot(None, pipeline, context)

    monkeypatch.setattr(VoiceCopilot, "build_from_config", staticmethod(build))


def test_ask_prints_answer(monkeypatch, capsys):
    pipeline = FakePipeline()
    _patch_copilot(monkeypatch, pipeline)

    assert cli.main(["ask", "What is zero to one?", "--book", "zero_to_one", "--chapter", "3",
                     "--progress", "1"]) == 0

    out = capsys.readouterr().out
    assert "Vertical progress." in out
    assert "Citations: [t=05:40]" in out
    assert "chapter 1 at 340s" in out
    _, context, _ = pipeline.calls[0]
    assert context.playback_chapter_index == 3
    assert context.listener_progress_chapter_index == 1


def test_ask_json_fallback(monkeypatch, capsys, empty_config):
    _patch_copilot(monkeypatch, FakePipeline(error=ContentUnavailable("no transcript")))

    assert cli.main(["ask", "What happened?", "--json"]) == 0

    data = json.loads(capsys.readouterr().out)
    assert data["fallback"] is True
    assert data["citations"] == []


def test_errors_return_nonzero(monkeypatch, capsys):
    def build(audiobook_id=None, audio=True, user_id="default"):
        raise ConfigurationError("Unknown audiobook: nope", component="voice_assistant")

    monkeypatch.setattr(VoiceCopilot, "build_from_config", staticmethod(build))

    assert cli.main(["ask", "q", "--book", "nope"]) == 1
    assert "Unknown audiobook" in capsys.readouterr().err
