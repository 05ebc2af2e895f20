"""Loading and caching of the speech-to-text model."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import httpx
from fastapi.concurrency import run_in_threadpool

from .config import DEFAULT_MODEL, MODEL_CATALOG, MODELS_DIR
from .progress import ProgressCallback

# Share of the progress range spent downloading; the rest covers initialisation.
DOWNLOAD_SHARE = 0.9


class BusyError(RuntimeError):
    """Raised when a model load is requested while another is in flight."""


class ModelLoadError(RuntimeError):
    """Raised when neither the requested nor the fallback model could be loaded."""


class LoadCancelled(RuntimeError):
    """Raised inside a loader when the in-flight load was cancelled."""


def resolve_model_id(name: str) -> str:
    entry = MODEL_CATALOG.get(name)
    if entry is None:
        logging.warning("Unknown model %s; using %s instead.", name, DEFAULT_MODEL)
        entry = MODEL_CATALOG[DEFAULT_MODEL]
    return entry["model_id"]


@dataclass
class ModelHandle:
    name: str
    model_id: str
    loaded: bool = False
    loading: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    model: Any = None


class ModelLoader(Protocol):
    """Fetches a checkpoint and turns it into an inference model.

    Both methods run in a worker thread. ``fetch`` must check ``cancel`` and
    raise :class:`LoadCancelled` once it is set.
    """

    def fetch(self, model_id: str, on_progress: ProgressCallback, cancel: threading.Event) -> Path:
        ...

    def load(self, checkpoint: Path) -> Any:
        ...


class WhisperLoader:
    """Download ``openai-whisper`` checkpoints with progress and load them with torch."""

    def __init__(self, download_root: Path = MODELS_DIR, device: str = "auto", timeout: float = 60.0) -> None:
        self.download_root = download_root
        self.device = device
        self.timeout = timeout

    def fetch(self, model_id: str, on_progress: ProgressCallback, cancel: threading.Event) -> Path:
        try:
            import whisper  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("The `openai-whisper` package is required for local transcription.") from exc

        url = checkpoint_url(whisper, model_id)
        # Whisper checkpoint URLs embed the sha256 as the second to last path segment.
        expected_sha256 = url.split("/")[-2]
        self.download_root.mkdir(parents=True, exist_ok=True)
        target = self.download_root / url.rsplit("/", 1)[-1]

        if target.is_file() and _sha256(target) == expected_sha256:
            on_progress(1.0)
            return target

        partial = target.with_name(target.name + ".part")
        digest = hashlib.sha256()
        try:
            with httpx.stream("GET", url, follow_redirects=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total = int(response.headers.get("Content-Length") or 0)
                received = 0
                with partial.open("wb") as fh:
                    for chunk in response.iter_bytes(chunk_size=1 << 20):
                        if cancel.is_set():
                            raise LoadCancelled(f"Download of {model_id} cancelled")
                        fh.write(chunk)
                        digest.update(chunk)
                        received += len(chunk)
                        if total:
                            on_progress(min(1.0, received / total))
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        if digest.hexdigest() != expected_sha256:
            partial.unlink(missing_ok=True)
            raise RuntimeError(f"Checksum mismatch for whisper checkpoint '{model_id}'")
        partial.replace(target)
        on_progress(1.0)
        return target

    def load(self, checkpoint: Path) -> Any:
        import torch
        import whisper  # type: ignore

        device = self.device
        if device == "auto":
            device = "cuda" if torch.cuda.is_available() else "cpu"
        return whisper.load_model(str(checkpoint), device=device)


def checkpoint_url(module: Any, model_id: str) -> str:
    """Look up the download URL of a whisper checkpoint.

    openai-whisper only exposes its checkpoint table as the private
    ``_MODELS`` mapping, so every access goes through here.
    """

    table = getattr(module, "_MODELS", None)
    if not isinstance(table, dict):
        raise RuntimeError(
            "This openai-whisper release does not expose its checkpoint table (whisper._MODELS); "
            "install a compatible openai-whisper version."
        )
    url = table.get(model_id)
    if url is None:
        raise RuntimeError(f"Unknown whisper checkpoint '{model_id}'")
    return url


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for block in iter(lambda: fh.read(1 << 20), b""):
            digest.update(block)
    return digest.hexdigest()


class ModelManager:
    """Owns the single cached model slot.

    At most one load runs at a time; a second :meth:`load_model` call made
    while one is pending returns ``False`` without touching state. The
    previously cached model stays active until a new load succeeds.
    """

    def __init__(self, loader: Optional[ModelLoader] = None) -> None:
        self._loader = loader or WhisperLoader()
        self._current: Optional[ModelHandle] = None
        self._pending: Optional[ModelHandle] = None
        self._last_cancelled = False

    @property
    def is_loading(self) -> bool:
        return self._pending is not None

    @property
    def last_load_cancelled(self) -> bool:
        """Whether the most recent :meth:`load_model` call ended by cancellation."""

        return self._last_cancelled

    @property
    def current(self) -> Optional[ModelHandle]:
        return self._current

    @property
    def active(self) -> Optional[ModelHandle]:
        """The cached handle, or ``None`` while nothing is usable."""

        if self._pending is not None or self._current is None or not self._current.loaded:
            return None
        return self._current

    def is_loaded(self, name: str) -> bool:
        active = self.active
        return active is not None and active.name == name

    def cancel_load(self) -> bool:
        if self._pending is None:
            return False
        logging.info("Cancelling load of model %s", self._pending.name)
        self._pending.cancel_event.set()
        return True

    async def load_model(self, name: str, on_progress: Optional[Callable[[float], None]] = None) -> bool:
        if self._pending is not None:
            logging.info("Model %s requested while %s is loading; ignoring.", name, self._pending.name)
            return False

        handle = ModelHandle(name=name, model_id=resolve_model_id(name), loading=True)
        self._pending = handle
        self._last_cancelled = False
        loop = asyncio.get_running_loop()
        highest = -1.0

        def report(fraction: float) -> None:
            nonlocal highest
            fraction = min(1.0, max(0.0, fraction))
            if fraction <= highest:
                return
            highest = fraction
            if on_progress is not None:
                on_progress(fraction)

        def from_worker(fraction: float) -> None:
            loop.call_soon_threadsafe(report, fraction * DOWNLOAD_SHARE)

        try:
            report(0.0)
            checkpoint = await run_in_threadpool(self._loader.fetch, handle.model_id, from_worker, handle.cancel_event)
            if handle.cancel_event.is_set():
                raise LoadCancelled(f"Load of {name} cancelled")
            model = await run_in_threadpool(self._loader.load, checkpoint)
            if handle.cancel_event.is_set():
                raise LoadCancelled(f"Load of {name} cancelled")
        except LoadCancelled as exc:
            logging.info("%s", exc)
            self._last_cancelled = True
            return False
        except Exception as exc:
            logging.error("Failed to load model %s (%s): %s", name, handle.model_id, exc)
            return False
        finally:
            handle.loading = False
            self._pending = None

        handle.model = model
        handle.loaded = True
        self._current = handle
        logging.info("Loaded model %s (%s)", name, handle.model_id)
        report(1.0)
        return True
