"""Top-level package for hearsay."""

__version__ = "0.1.0"

from . import audio, config, model_manager, pipeline, storage, summarizer, transcriber  # noqa: E402

__all__ = ["audio", "config", "model_manager", "pipeline", "storage", "summarizer", "transcriber"]
