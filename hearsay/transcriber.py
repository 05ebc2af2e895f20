"""Chunked speech-to-text on top of the cached whisper model."""

from __future__ import annotations

import io
import logging
import re
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
import soundfile as sf
from fastapi.concurrency import run_in_threadpool

from .capabilities import CapabilityProbe, SystemProbe
from .model_manager import ModelManager
from .models import AudioUnit
from .progress import ProgressCallback, ProgressThrottle

SAMPLE_RATE = 16000
CHUNK_SECONDS = 30.0
STRIDE_SECONDS = 5.0


class TranscriptionError(RuntimeError):
    """Raised when inference fails."""


class FormatError(TranscriptionError):
    """Raised when the audio cannot be shaped into model input, even after the retry."""


class CapabilityError(TranscriptionError):
    """Raised when a required platform tool is missing. Never retried."""


class ModelNotLoadedError(TranscriptionError):
    """Raised when transcription is attempted without a loaded model."""


class _FormatMismatch(Exception):
    pass


def plan_chunks(
    total_samples: int,
    samplerate: int = SAMPLE_RATE,
    chunk_seconds: float = CHUNK_SECONDS,
    stride_seconds: float = STRIDE_SECONDS,
) -> List[Tuple[int, int]]:
    """Return ``(start, end)`` sample spans covering the clip.

    Consecutive spans overlap by ``stride_seconds``; the last span is cut at
    the end of the clip.
    """

    if total_samples <= 0:
        return []
    window = max(1, int(chunk_seconds * samplerate))
    overlap = max(0, int(stride_seconds * samplerate))
    if overlap >= window:
        overlap = int(window * 0.2)
    step = window - overlap

    spans: List[Tuple[int, int]] = []
    start = 0
    while True:
        end = min(start + window, total_samples)
        spans.append((start, end))
        if end >= total_samples:
            break
        start += step
    return spans


def _normalise_token(token: str) -> str:
    return re.sub(r"[^\w]+", "", token.lower(), flags=re.UNICODE)


def _trim_overlap(previous: Sequence[str], current: List[str], min_match_words: int) -> List[str]:
    prev_norm = [_normalise_token(w) for w in previous[-100:]]
    curr_norm = [_normalise_token(w) for w in current]
    max_k = min(len(prev_norm), len(curr_norm))
    for k in range(max_k, min_match_words - 1, -1):
        if prev_norm[-k:] == curr_norm[:k] and any(prev_norm[-k:]):
            return current[k:]
    return current


def merge_chunk_texts(texts: Sequence[str], min_match_words: int = 2) -> str:
    """Join chunk transcripts in order, dropping words repeated across an overlap."""

    merged: List[str] = []
    for text in texts:
        words = text.split()
        if not words:
            continue
        if merged:
            words = _trim_overlap(merged, words, min_match_words)
        merged.extend(words)
    return " ".join(merged)


def resample(audio: np.ndarray, source_rate: int, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    if source_rate == target_rate or audio.size == 0:
        return audio.astype(np.float32)
    target_len = int(round(audio.shape[0] * target_rate / source_rate))
    source_times = np.arange(audio.shape[0]) / source_rate
    target_times = np.arange(target_len) / target_rate
    return np.interp(target_times, source_times, audio).astype(np.float32)


def decode_in_memory(content: bytes) -> np.ndarray:
    """Decode a clip held in memory to 16 kHz mono float32."""

    try:
        data, samplerate = sf.read(io.BytesIO(content), dtype="float32", always_2d=True)
    except RuntimeError as exc:
        raise _FormatMismatch(str(exc)) from exc
    return resample(data.mean(axis=1), samplerate)


def decode_with_ffmpeg(path: Any) -> np.ndarray:
    """Decode a clip from disk through ffmpeg, as whisper does for file input."""

    try:
        import whisper  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise TranscriptionError("The `openai-whisper` package is required for local transcription.") from exc
    try:
        return whisper.load_audio(str(path))
    except FileNotFoundError as exc:
        raise CapabilityError(
            "ffmpeg is required to decode this file but was not found. "
            "Install ffmpeg or run hearsay on a host where it is available."
        ) from exc
    except RuntimeError as exc:
        raise _FormatMismatch(str(exc)) from exc


class TranscriptionEngine:
    """Transcribe :class:`AudioUnit` objects with the model held by a :class:`ModelManager`."""

    def __init__(
        self,
        models: ModelManager,
        probe: Optional[CapabilityProbe] = None,
        chunk_seconds: float = CHUNK_SECONDS,
        stride_seconds: float = STRIDE_SECONDS,
    ) -> None:
        self._models = models
        self._probe = probe or SystemProbe()
        self.chunk_seconds = chunk_seconds
        self.stride_seconds = stride_seconds

    async def transcribe(
        self,
        unit: AudioUnit,
        language_code: Optional[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        handle = self._models.active
        if handle is None:
            raise ModelNotLoadedError("Transcription model not loaded")

        language = None if language_code in (None, "", "auto") else language_code
        throttle = ProgressThrottle(on_progress)

        try:
            return await self._run(handle.model, decode_in_memory, unit.content, language, throttle)
        except _FormatMismatch as exc:
            logging.warning("Model rejected in-memory audio for %s (%s); retrying from file.", unit.name, exc)

        if unit.ephemeral_url is None:
            raise FormatError(f"Could not decode {unit.name} and no file reference is available for a retry.")
        probe = self._probe.media_decoder()
        if not probe.available:
            raise CapabilityError(probe.reason or "No media decoder is available on this host.")
        try:
            return await self._run(handle.model, decode_with_ffmpeg, unit.ephemeral_url, language, throttle)
        except _FormatMismatch as exc:
            raise FormatError(f"Could not decode {unit.name}: {exc}") from exc

    async def _run(
        self,
        model: Any,
        decode: Callable[[Any], np.ndarray],
        source: Any,
        language: Optional[str],
        progress: ProgressThrottle,
    ) -> str:
        try:
            audio = await run_in_threadpool(decode, source)
        except (_FormatMismatch, TranscriptionError):
            raise
        except Exception as exc:
            raise TranscriptionError(f"Failed to decode audio: {exc}") from exc
        _check_samples(audio)

        spans = plan_chunks(len(audio), SAMPLE_RATE, self.chunk_seconds, self.stride_seconds)
        texts: List[str] = []
        for index, (start, end) in enumerate(spans):
            text = await run_in_threadpool(_transcribe_chunk, model, audio[start:end], language)
            texts.append(text)
            progress((index + 1) / len(spans))
        if not spans:
            progress(1.0)
        return merge_chunk_texts(texts)


def _check_samples(audio: Any) -> None:
    """Reject decoded input the model cannot take: it needs 1-D floating point samples."""

    if not isinstance(audio, np.ndarray) or audio.ndim != 1 or not np.issubdtype(audio.dtype, np.floating):
        shape = getattr(audio, "shape", None)
        dtype = getattr(audio, "dtype", type(audio).__name__)
        raise _FormatMismatch(f"expected mono float samples, got shape {shape} of {dtype}")


def _transcribe_chunk(model: Any, chunk: np.ndarray, language: Optional[str]) -> str:
    device = getattr(model, "device", None)
    try:
        result = model.transcribe(
            chunk,
            language=language,
            task="transcribe",
            temperature=0.0,
            condition_on_previous_text=False,
            fp16=getattr(device, "type", None) == "cuda",
            verbose=None,
        )
    except Exception as exc:
        raise TranscriptionError(f"Failed to transcribe audio: {exc}") from exc
    return str(result.get("text", "")).strip()
