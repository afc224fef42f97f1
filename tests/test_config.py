import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from nara import config as cfg


def _set_config(monkeypatch: pytest.MonkeyPatch, data: dict) -> None:
    monkeypatch.setattr(cfg, "_CFG", data, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", True, raising=False)


def test_defaults_when_config_is_empty(monkeypatch):
    _set_config(monkeypatch, {})

    assert cfg.get_wake_phrase() == "hey nara"
    assert cfg.get_vad_speech_frames() == 6
    assert cfg.get_vad_total_frames() == 10
    assert cfg.get_token_budget() == 180000
    assert cfg.get_full_limit_tokens() == 50000
    assert cfg.get_compressed_limit_tokens() == 100000
    assert cfg.get_playback_provider() == "none"
    assert cfg.get_control_host_port() == ("127.0.0.1", 8123)
    assert cfg.get_phoneme_substitutions() is None


def test_string_boolean_overrides(monkeypatch):
    _set_config(monkeypatch, {
        "interaction": {"muted": " True ", "seek_to_citation": "0"},
        "wake": {"continuous_listen": "yes"},
        "pipeline": {"spoiler_guard": "off"},
    })

    assert cfg.is_muted() is True
    assert cfg.seek_to_citation() is False
    assert cfg.continuous_listen() is True
    assert cfg.spoiler_guard_enabled() is False


def test_invalid_string_boolean_falls_back_to_default(monkeypatch):
    _set_config(monkeypatch, {"audio": {"mic_mute_while_tts": "maybe"}})

    assert cfg.mic_mute_while_tts() is True


def test_numeric_strings_are_cast(monkeypatch):
    _set_config(monkeypatch, {"vad": {"debounce_sec": "0.5"}, "pipeline": {"fallback_units": "4"}})

    assert cfg.get_vad_debounce_sec() == 0.5
    assert cfg.get_fallback_units() == 4


def test_api_keys_come_from_environment(monkeypatch):
    _set_config(monkeypatch, {"models": {"llm": {"api_key_env": "MY_LLM_KEY"}}})
    monkeypatch.setenv("MY_LLM_KEY", "secret")
    monkeypatch.setenv("SPOTIFY_ACCESS_TOKEN", "spotify-token")

    assert cfg.get_llm_api_key() == "secret"
    assert cfg.get_spotify_access_token() == "spotify-token"


def test_validation_collects_all_errors():
    with pytest.raises(ValueError) as exc:
        cfg._validate_config({
            "vad": {"speech_frames": 12, "total_frames": 10},
            "wake": {"sensitivity": 1.5},
            "pipeline": {"mode_hint": "everything", "full_limit_tokens": 200000, "compressed_limit_tokens": 100000},
            "playback": {"provider": "cassette"},
            "services": {"control": {"port": 70000}},
        })

    message = str(exc.value)
    assert message.startswith("Configuration validation failed")
    assert "vad.speech_frames must not exceed vad.total_frames" in message
    assert "wake.sensitivity" in message
    assert "pipeline.mode_hint" in message
    assert "pipeline.full_limit_tokens must not exceed" in message
    assert "playback.provider" in message
    assert "services.control.port" in message


def test_set_config_path_loads_yaml(monkeypatch, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "wake:\n"
        "  phrase: hello nara\n"
        "  phoneme_substitutions:\n"
        "    hallo: hello\n"
        "pipeline:\n"
        "  mode_hint: focused\n"
    )
    monkeypatch.setattr(cfg, "_CONFIG_PATH", cfg._CONFIG_PATH, raising=False)
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", False, raising=False)

    cfg.set_config_path(str(path))

    assert cfg.get_wake_phrase() == "hello nara"
    assert cfg.get_phoneme_substitutions() == {"hallo": "hello"}
    assert cfg.get_mode_hint() == "focused"


def test_validate_config_silent_reports_invalid_file(monkeypatch, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("vad:\n  noise_decay: 3\n")
    monkeypatch.setattr(cfg, "_CONFIG_PATH", str(path), raising=False)
    monkeypatch.setattr(cfg, "_CFG", {}, raising=False)
    monkeypatch.setattr(cfg, "_LOADED", False, raising=False)

    assert cfg.validate_config_silent() is False


def test_interrupt_threshold_default_and_range(monkeypatch):
    _set_config(monkeypatch, {})
    assert cfg.get_interrupt_threshold() == 0.08

    _set_config(monkeypatch, {"vad": {"interrupt_threshold": "0.2"}})
    assert cfg.get_interrupt_threshold() == 0.2

    with pytest.raises(ValueError) as exc:
        cfg._validate_config({"vad": {"interrupt_threshold": 3}})
    assert "vad.interrupt_threshold" in str(exc.value)
