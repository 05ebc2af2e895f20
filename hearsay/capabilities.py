"""Probes for platform features the pipeline depends on."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True, slots=True)
class ProbeResult:
    available: bool
    reason: Optional[str] = None


class CapabilityProbe(Protocol):
    """Answers whether a capture device and a media decoder are usable."""

    def input_device(self) -> ProbeResult:
        ...

    def media_decoder(self) -> ProbeResult:
        ...


class SystemProbe:
    """Probe backed by PortAudio device enumeration and the ``ffmpeg`` binary."""

    def input_device(self) -> ProbeResult:
        try:
            import sounddevice as sd  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            return ProbeResult(False, f"The `sounddevice` package is unavailable: {exc}")
        try:
            sd.query_devices(kind="input")
        except Exception as exc:
            logging.debug("Input device query failed: %s", exc)
            return ProbeResult(False, f"No usable input device: {exc}")
        return ProbeResult(True)

    def media_decoder(self) -> ProbeResult:
        if shutil.which("ffmpeg") is None:
            return ProbeResult(
                False,
                "ffmpeg was not found on PATH. Install ffmpeg (e.g. `brew install ffmpeg` or "
                "`apt install ffmpeg`) or run hearsay on a host where it is available.",
            )
        return ProbeResult(True)
