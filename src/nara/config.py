"""
Centralized configuration loader and accessors for Nara.

Loads YAML from `config/config.yaml` (or the file named by NARA_CONFIG) and
provides typed getters aligned with the documented schema
(models.*, audio.*, vad.*, wake.*, pipeline.*, content.*, playback.*,
interaction.*, services.*, prompts.*).
"""
from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, Optional

import yaml


_DEFAULT_CONFIG_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "config", "config.yaml"))
_CONFIG_PATH = os.environ.get("NARA_CONFIG", _DEFAULT_CONFIG_PATH)
_CFG: Dict[str, Any] = {}
_LOADED = False

_BOOL_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_BOOL_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})
_MODE_HINTS = frozenset({"auto", "full", "compressed", "focused"})

logger = logging.getLogger("nara.config")


def _load() -> None:
    global _CFG, _LOADED
    if _LOADED:
        return
    if os.path.exists(_CONFIG_PATH):
        with open(_CONFIG_PATH, "r") as f:
            _CFG = yaml.safe_load(f) or {}
    else:
        _CFG = {}

    _validate_config(_CFG)
    _LOADED = True


def set_config_path(path: str) -> None:
    """Point the loader at another YAML file and force a reload on next access."""
    global _CONFIG_PATH, _LOADED
    _CONFIG_PATH = os.path.abspath(path)
    _LOADED = False


def reload_config() -> Dict[str, Any]:
    global _LOADED
    _LOADED = False
    _load()
    return _CFG


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_range(section: Dict[str, Any], key: str, prefix: str, errors: list,
                 low: Optional[float] = None, high: Optional[float] = None,
                 exclusive_low: bool = False) -> None:
    if key not in section:
        return
    value = section[key]
    name = f"{prefix}.{key}"
    if not _is_number(value):
        errors.append(f"{name} must be a number")
        return
    if low is not None and (value <= low if exclusive_low else value < low):
        errors.append(f"{name} must be {'>' if exclusive_low else '>='} {low}")
    if high is not None and value > high:
        errors.append(f"{name} must be <= {high}")


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration values and provide helpful error messages"""
    errors = []
    warnings = []

    if not isinstance(config, dict):
        raise ValueError("Configuration validation failed:\n  - top level must be a mapping")

    models_config = config.get("models") or {}
    llm_config = models_config.get("llm") or {}
    _check_range(llm_config, "temperature", "models.llm", errors, 0, 2)
    _check_range(llm_config, "max_tokens", "models.llm", errors, 0, exclusive_low=True)
    for service in ("llm", "tts", "stt"):
        svc = models_config.get(service) or {}
        _check_range(svc, "timeout_sec", f"models.{service}", errors, 0, exclusive_low=True)
        url = svc.get("server_url", svc.get("url"))
        if url is not None and not isinstance(url, str):
            errors.append(f"models.{service} url must be a string")

    audio_config = config.get("audio") or {}
    if "sample_rate" in audio_config:
        sr = audio_config["sample_rate"]
        if not _is_number(sr) or sr <= 0:
            errors.append("audio.sample_rate must be a positive number")
        elif sr not in [8000, 16000, 22050, 24000, 44100, 48000]:
            warnings.append("audio.sample_rate should be a standard rate (8000, 16000, 22050, 24000, 44100, 48000)")
    _check_range(audio_config, "frame_ms", "audio", errors, 5, 100)

    vad_config = config.get("vad") or {}
    _check_range(vad_config, "static_threshold", "vad", errors, 0, 1)
    _check_range(vad_config, "noise_multiplier", "vad", errors, 1)
    _check_range(vad_config, "calibration_frames", "vad", errors, 0)
    _check_range(vad_config, "debounce_sec", "vad", errors, 0)
    _check_range(vad_config, "noise_decay", "vad", errors, 0, 1)
    _check_range(vad_config, "interrupt_threshold", "vad", errors, 0, 1)
    total = vad_config.get("total_frames")
    speech = vad_config.get("speech_frames")
    _check_range(vad_config, "total_frames", "vad", errors, 1)
    _check_range(vad_config, "speech_frames", "vad", errors, 1)
    if _is_number(total) and _is_number(speech) and speech > total:
        errors.append("vad.speech_frames must not exceed vad.total_frames")

    wake_config = config.get("wake") or {}
    if "phrase" in wake_config and (not isinstance(wake_config["phrase"], str) or not wake_config["phrase"].strip()):
        errors.append("wake.phrase must be a non-empty string")
    _check_range(wake_config, "sensitivity", "wake", errors, 0, 1)
    _check_range(wake_config, "debounce_sec", "wake", errors, 0)
    _check_range(wake_config, "command_timeout_sec", "wake", errors, 0, exclusive_low=True)
    subs = wake_config.get("phoneme_substitutions")
    if subs is not None:
        if not isinstance(subs, dict):
            errors.append("wake.phoneme_substitutions must be a mapping")
        elif not all(isinstance(k, str) and isinstance(v, str) for k, v in subs.items()):
            errors.append("wake.phoneme_substitutions entries must be strings")

    pipeline_config = config.get("pipeline") or {}
    for key in ("token_budget", "full_limit_tokens", "compressed_limit_tokens", "compress_target_tokens"):
        _check_range(pipeline_config, key, "pipeline", errors, 0, exclusive_low=True)
    _check_range(pipeline_config, "headroom_tokens", "pipeline", errors, 0)
    _check_range(pipeline_config, "fallback_units", "pipeline", errors, 1)
    _check_range(pipeline_config, "neighbor_window", "pipeline", errors, 0)
    full_limit = pipeline_config.get("full_limit_tokens")
    compressed_limit = pipeline_config.get("compressed_limit_tokens")
    if _is_number(full_limit) and _is_number(compressed_limit) and full_limit > compressed_limit:
        errors.append("pipeline.full_limit_tokens must not exceed pipeline.compressed_limit_tokens")
    budget = pipeline_config.get("token_budget")
    headroom = pipeline_config.get("headroom_tokens")
    if _is_number(budget) and _is_number(headroom) and headroom >= budget:
        errors.append("pipeline.headroom_tokens must be smaller than pipeline.token_budget")
    if "mode_hint" in pipeline_config and pipeline_config["mode_hint"] not in _MODE_HINTS:
        errors.append("pipeline.mode_hint must be one of auto, full, compressed, focused")

    content_config = config.get("content") or {}
    dataset_dir = content_config.get("dataset_dir")
    if dataset_dir is not None:
        if not isinstance(dataset_dir, str):
            errors.append("content.dataset_dir must be a string")
        elif not os.path.isdir(dataset_dir):
            warnings.append(f"Dataset directory not found: {dataset_dir}")

    playback_config = config.get("playback") or {}
    if "provider" in playback_config and playback_config["provider"] not in ("spotify", "none"):
        errors.append("playback.provider must be 'spotify' or 'none'")
    _check_range(playback_config, "max_retries", "playback", errors, 0)
    _check_range(playback_config, "poll_interval_sec", "playback", errors, 0, exclusive_low=True)

    interaction_config = config.get("interaction") or {}
    _check_range(interaction_config, "listen_timeout_sec", "interaction", errors, 0, exclusive_low=True)

    services_config = config.get("services") or {}
    for service_name, service_config in services_config.items():
        if not isinstance(service_config, dict):
            continue
        if "port" in service_config:
            port = service_config["port"]
            if not _is_number(port) or port < 1 or port > 65535:
                errors.append(f"services.{service_name}.port must be between 1 and 65535")
        if "host" in service_config:
            host = service_config["host"]
            if not isinstance(host, str):
                errors.append(f"services.{service_name}.host must be a string")
            elif not _is_valid_host(host):
                errors.append(f"services.{service_name}.host is not a valid host address")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        raise ValueError(error_msg)

    for warning in warnings:
        logger.warning(f"Config warning: {warning}")


def _is_valid_host(host: str) -> bool:
    """Validate host address format"""
    if not host or not isinstance(host, str):
        return False

    if host in ["localhost", "127.0.0.1", "0.0.0.0"]:
        return True

    ip_pattern = r'^(\d{1,3}\.){3}\d{1,3}$'
    if re.match(ip_pattern, host):
        parts = host.split('.')
        return all(0 <= int(part) <= 255 for part in parts)

    hostname_pattern = r'^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$'
    return bool(re.match(hostname_pattern, host))


def validate_config_silent() -> bool:
    """Validate the current file without raising; returns False on errors."""
    try:
        reload_config()
        return True
    except ValueError as e:
        logger.error(str(e))
        return False


def get(path: str, default: Any = None) -> Any:
    """Dot-path getter from loaded config.

    Example: get("wake.sensitivity", 0.7)
    """
    _load()
    cur: Any = _CFG
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def get_typed(path: str, default: Any, cast_type: type) -> Any:
    """Get a configuration value with type casting and default fallback.

    Args:
        path: Dot-separated configuration path
        default: Default value if path not found or casting fails
        cast_type: Type to cast the value to

    Returns:
        The cast value or default
    """
    val = get(path, default)

    if cast_type is bool:
        if isinstance(val, bool):
            return val
        if isinstance(val, str):
            normalized = val.strip().lower()
            if normalized in _BOOL_TRUE_VALUES:
                return True
            if normalized in _BOOL_FALSE_VALUES:
                return False
            return default
        try:
            return bool(val)
        except (TypeError, ValueError):
            return default

    if isinstance(val, cast_type) and not isinstance(val, bool):
        return val

    try:
        return cast_type(val)
    except (TypeError, ValueError):
        return default


# ---- Language model ----
def get_llm_server_url() -> str:
    return str(get("models.llm.server_url", "http://localhost:8080/v1/chat/completions"))

def get_llm_api_key() -> Optional[str]:
    env_name = str(get("models.llm.api_key_env", "NARA_LLM_API_KEY"))
    return os.environ.get(env_name) or None

def get_llm_model() -> str:
    return str(get("models.llm.model", "local"))

def get_llm_temperature() -> float:
    return get_typed("models.llm.temperature", 0.3, float)

def get_llm_max_tokens() -> int:
    return get_typed("models.llm.max_tokens", 1024, int)

def get_llm_timeout() -> float:
    return get_typed("models.llm.timeout_sec", 30.0, float)

def get_llm_stream() -> bool:
    return get_typed("models.llm.stream", True, bool)


# ---- Speech services ----
def get_tts_server_url() -> str:
    return str(get("models.tts.server_url", "http://localhost:8880/v1/audio/speech"))

def get_tts_voice() -> str:
    return str(get("models.tts.voice", "af_heart"))

def get_tts_speed() -> float:
    return get_typed("models.tts.speed", 1.0, float)

def get_tts_sample_rate() -> int:
    return get_typed("models.tts.sample_rate", 24000, int)

def get_tts_timeout() -> float:
    return get_typed("models.tts.timeout_sec", 15.0, float)

def get_stt_url() -> str:
    return str(get("models.stt.url", "ws://localhost:8765/v1/listen"))

def get_stt_language() -> str:
    return str(get("models.stt.language", "en"))

def get_stt_timeout() -> float:
    return get_typed("models.stt.timeout_sec", 10.0, float)

def get_stt_api_key() -> Optional[str]:
    env_name = str(get("models.stt.api_key_env", "NARA_STT_API_KEY"))
    return os.environ.get(env_name) or None


# ---- Audio I/O ----
def get_audio_sample_rate() -> int:
    return get_typed("audio.sample_rate", 16000, int)

def get_audio_frame_ms() -> int:
    return get_typed("audio.frame_ms", 20, int)

def get_audio_output_device():
    """Return configured output device (int index or str name) or None."""
    return get("audio.output_device", None)

def get_audio_input_device():
    """Return configured input device (int index or str name) or None."""
    return get("audio.input_device", None)

def mic_mute_while_tts() -> bool:
    """When true, microphone frames are not forwarded to STT while an answer is playing."""
    return get_typed("audio.mic_mute_while_tts", True, bool)


# ---- Voice activity detection ----
def get_vad_static_threshold() -> float:
    return get_typed("vad.static_threshold", 0.02, float)

def get_vad_noise_multiplier() -> float:
    return get_typed("vad.noise_multiplier", 2.5, float)

def get_vad_calibration_frames() -> int:
    return get_typed("vad.calibration_frames", 50, int)

def get_vad_speech_frames() -> int:
    return get_typed("vad.speech_frames", 6, int)

def get_vad_total_frames() -> int:
    return get_typed("vad.total_frames", 10, int)

def get_vad_debounce_sec() -> float:
    return get_typed("vad.debounce_sec", 0.25, float)

def get_vad_noise_decay() -> float:
    return get_typed("vad.noise_decay", 0.99, float)

def get_interrupt_threshold() -> float:
    """Minimum speech level that counts as barge-in while an answer is playing"""
    return get_typed("vad.interrupt_threshold", 0.08, float)


# ---- Wake word ----
def get_wake_phrase() -> str:
    return str(get("wake.phrase", "hey nara"))

def get_wake_sensitivity() -> float:
    return get_typed("wake.sensitivity", 0.7, float)

def get_wake_debounce_sec() -> float:
    return get_typed("wake.debounce_sec", 2.0, float)

def get_command_timeout_sec() -> float:
    return get_typed("wake.command_timeout_sec", 5.0, float)

def get_phoneme_substitutions() -> Optional[Dict[str, str]]:
    """Configured substitution table, or None to use the built-in defaults."""
    subs = get("wake.phoneme_substitutions", None)
    if not isinstance(subs, dict):
        return None
    return {str(k).lower(): str(v).lower() for k, v in subs.items()}

def continuous_listen() -> bool:
    """When true, VAD speech onset opens a listening window without the wake phrase."""
    return get_typed("wake.continuous_listen", False, bool)


# ---- Answering pipeline ----
def get_token_budget() -> int:
    return get_typed("pipeline.token_budget", 180000, int)

def get_headroom_tokens() -> int:
    return get_typed("pipeline.headroom_tokens", 20000, int)

def get_mode_hint() -> str:
    hint = str(get("pipeline.mode_hint", "auto"))
    return hint if hint in _MODE_HINTS else "auto"

def get_full_limit_tokens() -> int:
    return get_typed("pipeline.full_limit_tokens", 50000, int)

def get_compressed_limit_tokens() -> int:
    return get_typed("pipeline.compressed_limit_tokens", 100000, int)

def get_compress_target_tokens() -> int:
    return get_typed("pipeline.compress_target_tokens", 9000, int)

def get_fallback_units() -> int:
    return get_typed("pipeline.fallback_units", 8, int)

def get_neighbor_window() -> int:
    return get_typed("pipeline.neighbor_window", 1, int)

def include_prior_summaries() -> bool:
    return get_typed("pipeline.include_prior_summaries", True, bool)

def get_prior_summary_count() -> int:
    return get_typed("pipeline.prior_summary_count", 3, int)

def spoiler_guard_enabled() -> bool:
    return get_typed("pipeline.spoiler_guard", True, bool)


# ---- Content ----
def get_dataset_dir() -> str:
    return os.path.abspath(str(get("content.dataset_dir", "data/audiobooks")))

def get_default_audiobook() -> Optional[str]:
    book = get("content.default_audiobook", None)
    return str(book) if book else None


# ---- Background playback ----
def get_playback_provider() -> str:
    return str(get("playback.provider", "none"))

def get_spotify_api_base() -> str:
    return str(get("playback.spotify.api_base", "https://api.spotify.com/v1"))

def get_spotify_access_token() -> Optional[str]:
    env_name = str(get("playback.spotify.access_token_env", "SPOTIFY_ACCESS_TOKEN"))
    return os.environ.get(env_name) or None

def get_spotify_device_id() -> Optional[str]:
    device = get("playback.spotify.device_id", None)
    return str(device) if device else None

def get_playback_max_retries() -> int:
    return get_typed("playback.max_retries", 3, int)

def get_pause_retry_delay() -> float:
    return get_typed("playback.pause_retry_delay_sec", 0.1, float)

def get_resume_retry_delay() -> float:
    return get_typed("playback.resume_retry_delay_sec", 0.25, float)

def get_playback_timeout() -> float:
    return get_typed("playback.timeout_sec", 5.0, float)

def get_playback_poll_interval() -> float:
    return get_typed("playback.poll_interval_sec", 2.0, float)


# ---- Interaction policy ----
def get_listen_timeout_sec() -> float:
    return get_typed("interaction.listen_timeout_sec", 8.0, float)

def is_muted() -> bool:
    return get_typed("interaction.muted", False, bool)

def seek_to_citation() -> bool:
    return get_typed("interaction.seek_to_citation", False, bool)

def get_fallback_answer() -> str:
    return str(get(
        "interaction.fallback_answer",
        "I don't have the text for this part of the book yet, so I can't answer that "
        "without risking a spoiler. Let's keep listening.",
    ))

def get_history_size() -> int:
    return get_typed("interaction.history_size", 50, int)


# ---- Control server ----
def get_control_host_port() -> tuple:
    host = str(get("services.control.host", "127.0.0.1"))
    port = get_typed("services.control.port", 8123, int)
    return host, port


def get_system_prompt() -> Optional[str]:
    """Optional override for the global assistant prompt."""
    prompt = get("prompts.system", None)
    return str(prompt) if prompt else None
