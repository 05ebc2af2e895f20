"""Audio acquisition: microphone capture and uploaded files."""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
import os
import subprocess
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

import numpy as np
import soundfile as sf
from fastapi.concurrency import run_in_threadpool

from .capabilities import CapabilityProbe, SystemProbe
from .config import MAX_FILE_SIZE_MB, SUPPORTED_AUDIO_FORMATS, SUPPORTED_VIDEO_FORMATS
from .models import AudioUnit

TickCallback = Callable[[str], None]


class IngestionError(RuntimeError):
    """Raised when audio cannot be captured or read."""


class CapturePermissionError(PermissionError):
    """Raised when the capture device is refused or unavailable."""


def format_elapsed(seconds: float) -> str:
    total = int(max(0.0, seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


def supported_extensions() -> tuple[str, ...]:
    return tuple(dict.fromkeys(SUPPORTED_AUDIO_FORMATS + SUPPORTED_VIDEO_FORMATS))


def guess_mime_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    if guessed:
        return guessed
    ext = Path(name).suffix.lower().lstrip(".")
    if ext in SUPPORTED_VIDEO_FORMATS and ext not in SUPPORTED_AUDIO_FORMATS:
        return f"video/{ext}"
    return f"audio/{ext or 'octet-stream'}"


def probe_duration(content: bytes, path: Optional[Path] = None) -> float:
    """Return the duration in seconds by decoding ``content``.

    libsndfile handles WAV, FLAC, OGG and (recent builds) MP3 in memory. Other
    containers are measured with ``ffprobe`` on ``path``. Returns ``0.0`` when
    neither can decode the clip.
    """

    try:
        return float(sf.info(io.BytesIO(content)).duration)
    except RuntimeError as exc:
        logging.debug("libsndfile could not read clip header: %s", exc)
    if path is None:
        return 0.0
    try:
        completed = subprocess.run(
            [
                "ffprobe",
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            capture_output=True,
            text=True,
            check=True,
        )
        return max(0.0, float(completed.stdout.strip()))
    except (OSError, subprocess.CalledProcessError, ValueError) as exc:
        logging.warning("Could not determine duration of %s: %s", path, exc)
        return 0.0


class CaptureSession:
    """A single exclusive microphone capture."""

    def __init__(self, samplerate: int, channels: int, on_tick: Optional[TickCallback] = None) -> None:
        self.samplerate = samplerate
        self.channels = channels
        self._on_tick = on_tick
        self._stream = None
        self._frames: List[np.ndarray] = []
        self._ticker: Optional[asyncio.Task] = None
        self._started_at = 0.0
        self.unit: Optional[AudioUnit] = None
        self.closed = False

    @property
    def elapsed(self) -> float:
        if not self._started_at:
            return 0.0
        return time.monotonic() - self._started_at

    @property
    def active(self) -> bool:
        return self._stream is not None

    def attach(self, stream) -> None:
        self._stream = stream
        self._started_at = time.monotonic()
        if self._on_tick is not None:
            self._ticker = asyncio.get_running_loop().create_task(self._tick())

    def _callback(self, indata, frames, time_info, status) -> None:  # type: ignore[override]
        if status:
            logging.debug("Recorder status: %s", status)
        self._frames.append(indata.copy())

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(1.0)
            try:
                self._on_tick(format_elapsed(self.elapsed))
            except Exception as exc:
                logging.debug("Tick callback error: %s", exc)

    def stop(self) -> List[np.ndarray]:
        """Release the device and return the captured frames."""

        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
        self.closed = True
        frames, self._frames = self._frames, []
        return frames


class AudioIngestion:
    """Turn recordings and uploads into :class:`AudioUnit` objects."""

    def __init__(
        self,
        max_file_size_mb: float = MAX_FILE_SIZE_MB,
        probe: Optional[CapabilityProbe] = None,
        samplerate: int = 16000,
        channels: int = 1,
    ) -> None:
        self.max_file_size_mb = max_file_size_mb
        self._probe = probe or SystemProbe()
        self._samplerate = samplerate
        self._channels = channels

    async def begin_capture(self, on_tick: Optional[TickCallback] = None) -> CaptureSession:
        result = self._probe.input_device()
        if not result.available:
            raise CapturePermissionError(result.reason or "Microphone access was denied.")
        try:
            import sounddevice as sd  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise CapturePermissionError(f"The `sounddevice` package is required for recording: {exc}") from exc

        session = CaptureSession(self._samplerate, self._channels, on_tick)
        try:
            stream = sd.InputStream(
                samplerate=self._samplerate,
                channels=self._channels,
                dtype="float32",
                callback=session._callback,
            )
            stream.start()
        except Exception as exc:
            session.stop()
            raise CapturePermissionError(f"Could not open the capture device: {exc}") from exc
        session.attach(stream)
        return session

    async def end_capture(self, session: CaptureSession) -> AudioUnit:
        if session.closed:
            raise IngestionError("Recording is not active.")
        frames = session.stop()
        if not frames:
            raise IngestionError("No audio was captured.")

        audio = np.concatenate(frames, axis=0)
        buffer = io.BytesIO()
        sf.write(buffer, audio, session.samplerate, format="WAV")
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        unit = await self._normalise(buffer.getvalue(), f"recording_{stamp}.wav", "audio/wav")
        session.unit = unit
        return unit

    async def ingest_file(self, path: Union[str, Path]) -> AudioUnit:
        path = Path(path)
        ext = path.suffix.lower().lstrip(".")
        if ext not in supported_extensions():
            raise IngestionError(
                f"Unsupported file type '{path.suffix or path.name}'. "
                f"Supported: {', '.join(supported_extensions())}"
            )
        try:
            content = await run_in_threadpool(path.read_bytes)
        except OSError as exc:
            raise IngestionError(f"Could not read {path}: {exc}") from exc
        if not content:
            raise IngestionError(f"{path.name} is empty.")
        return await self._normalise(content, path.name, guess_mime_type(path.name))

    def discard(self, target: Union[CaptureSession, AudioUnit, None]) -> None:
        """Release the device and ephemeral file held by ``target``. Safe to repeat."""

        if target is None:
            return
        if isinstance(target, CaptureSession):
            if not target.closed:
                target.stop()
            unit, target.unit = target.unit, None
        else:
            unit = target
        if unit is not None and unit.ephemeral_url is not None:
            unit.ephemeral_url.unlink(missing_ok=True)
            unit.ephemeral_url = None

    async def _normalise(self, content: bytes, name: str, mime_type: str) -> AudioUnit:
        suffix = Path(name).suffix or ".bin"
        fd, filename = tempfile.mkstemp(suffix=suffix, prefix="hearsay-")
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
        ephemeral = Path(filename)

        duration = await run_in_threadpool(probe_duration, content, ephemeral)
        size_warning = len(content) > self.max_file_size_mb * 1024 * 1024
        if size_warning:
            logging.warning(
                "%s is %.1f MB which exceeds the recommended %s MB. Processing may be slow.",
                name,
                len(content) / (1024 * 1024),
                self.max_file_size_mb,
            )
        return AudioUnit(
            content=content,
            mime_type=mime_type,
            duration_seconds=duration,
            name=name,
            ephemeral_url=ephemeral,
            size_bytes=len(content),
            size_warning=size_warning,
        )
