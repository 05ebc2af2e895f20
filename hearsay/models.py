"""Dataclasses describing persistent and transient objects for hearsay."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass(slots=True)
class AudioRecord:
    """Audio content owned by the store once saved."""

    id: str
    name: str
    mime_type: str
    content: bytes
    duration_seconds: float
    created_at: datetime


@dataclass(slots=True)
class TranscriptionRecord:
    """A transcript linked to an audio record by ``audio_id``."""

    id: str
    audio_id: str
    file_name: str
    transcript_text: str
    summary_text: Optional[str]
    model_used: str
    language_code: str
    created_at: datetime


@dataclass(slots=True)
class RecentEntry:
    id: str
    name: str
    timestamp: datetime


@dataclass(slots=True)
class AudioUnit:
    """Normalized audio produced by ingestion, not yet persisted."""

    content: bytes
    mime_type: str
    duration_seconds: float
    name: str
    ephemeral_url: Optional[Path] = None
    size_bytes: int = 0
    size_warning: bool = False


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    model: str = "whisper-small"
    summary_length: int = 3
    language: str = "auto"
    openai_api_key: Optional[str] = None
    summary_model: str = "gpt-3.5-turbo"
    summary_api_url: str = "https://api.openai.com/v1/chat/completions"
    summary_temperature: float = 0.5
    summary_max_tokens: int = 500
    max_file_size_mb: int = 25
    api_timeout: float = 60.0
    device: str = "auto"
