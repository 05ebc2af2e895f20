"""Persisted configuration management and the static catalogs it validates against."""

from __future__ import annotations

import json
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict

from .models import Config

APP_DIR = Path.home() / ".hearsay"
CONFIG_PATH = (APP_DIR / "config.json").expanduser()
MODELS_DIR = APP_DIR / "models"

MODEL_CATALOG: Dict[str, Dict[str, str]] = {
    "whisper-tiny": {"name": "Whisper Tiny", "size": "75 MB", "speed": "Very fast", "model_id": "tiny"},
    "whisper-base": {"name": "Whisper Base", "size": "142 MB", "speed": "Fast", "model_id": "base"},
    "whisper-small": {"name": "Whisper Small", "size": "466 MB", "speed": "Medium", "model_id": "small"},
    "whisper-medium": {"name": "Whisper Medium", "size": "1.5 GB", "speed": "Slow", "model_id": "medium"},
    "whisper-large": {"name": "Whisper Large", "size": "3 GB", "speed": "Very slow", "model_id": "large-v2"},
}
DEFAULT_MODEL = "whisper-tiny"
SMALLEST_MODEL = "whisper-tiny"

SUMMARY_LENGTHS = {1: "Very short", 2: "Short", 3: "Medium", 4: "Long", 5: "Very long"}
SUMMARY_DESCRIPTIONS = {
    1: "very short (1-2 sentences)",
    2: "short (2-3 sentences)",
    3: "medium length (3-5 sentences)",
    4: "long (5-7 sentences)",
    5: "very long (7-10 sentences)",
}

LANGUAGES = {"sv": "Swedish", "en": "English", "auto": "Automatic detection"}
LANGUAGE_NAMES = {"sv": "Swedish", "en": "English", "auto": "the same language as the text"}

MAX_FILE_SIZE_MB = 25
SUPPORTED_AUDIO_FORMATS = ("mp3", "wav", "ogg", "flac", "m4a", "webm")
SUPPORTED_VIDEO_FORMATS = ("mp4", "mov", "webm")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_SUMMARY_MODEL = "gpt-3.5-turbo"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded, saved or validated."""


def load_config() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    known = {f.name for f in fields(Config)}
    return Config(**{k: v for k, v in payload.items() if k in known})


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def validate_setting(key: str, value: Any) -> Any:
    """Return ``value`` coerced for ``key`` or raise :class:`ConfigError`."""

    if key == "model" and value not in MODEL_CATALOG:
        raise ConfigError(f"Unknown model '{value}'. Choose one of: {', '.join(MODEL_CATALOG)}")
    if key == "summary_length":
        try:
            value = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Summary length must be an integer, got {value!r}") from exc
        if value not in SUMMARY_LENGTHS:
            raise ConfigError("Summary length must be between 1 and 5.")
    if key == "language" and value not in LANGUAGES:
        raise ConfigError(f"Unknown language '{value}'. Choose one of: {', '.join(LANGUAGES)}")
    return value


def update_config(**kwargs: Any) -> Config:
    config = load_config()
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, validate_setting(key, value))
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return config
