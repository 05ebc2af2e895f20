"""Sequencing of ingestion, persistence, model loading, transcription and summarization."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from fastapi.concurrency import run_in_threadpool

from .audio import AudioIngestion, CaptureSession
from .config import SMALLEST_MODEL
from .model_manager import BusyError, LoadCancelled, ModelLoadError, ModelManager
from .models import AudioUnit, Config
from .progress import ProgressChannel
from .storage import Storage
from .summarizer import SummarizationEngine
from .transcriber import TranscriptionEngine


class Stage(str, enum.Enum):
    IDLE = "idle"
    INGESTING = "ingesting"
    PERSISTING_AUDIO = "persisting_audio"
    MODEL_READY = "model_ready"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    PERSISTING_TRANSCRIPT = "persisting_transcript"
    DONE = "done"
    FAILED = "failed"


STAGE_LABELS = {
    Stage.IDLE: "Idle",
    Stage.INGESTING: "Preparing audio…",
    Stage.PERSISTING_AUDIO: "Saving audio…",
    Stage.MODEL_READY: "Loading transcription model…",
    Stage.TRANSCRIBING: "Transcribing audio…",
    Stage.SUMMARIZING: "Creating summary…",
    Stage.PERSISTING_TRANSCRIPT: "Saving transcript…",
    Stage.DONE: "Done",
    Stage.FAILED: "Failed",
}


class PipelineError(RuntimeError):
    """Terminal failure of a pipeline run, tagged with the stage that failed."""

    def __init__(self, stage: Stage, message: str) -> None:
        super().__init__(f"{STAGE_LABELS[stage].rstrip('…')} failed: {message}")
        self.stage = stage
        self.reason = message


@dataclass(slots=True)
class PipelineResult:
    transcript_text: str
    summary_text: Optional[str]
    audio_id: str
    transcript_id: str
    model_used: str


class TranscriptionPipeline:
    """Runs one clip through every stage.

    Any stage other than summarization ends the run with :class:`PipelineError`.
    Summarization failures turn into a placeholder summary instead.
    """

    def __init__(
        self,
        storage: Storage,
        ingestion: AudioIngestion,
        models: ModelManager,
        engine: TranscriptionEngine,
        summarizer: SummarizationEngine,
        config: Config,
        progress: Optional[ProgressChannel] = None,
    ) -> None:
        self.storage = storage
        self.ingestion = ingestion
        self.models = models
        self.engine = engine
        self.summarizer = summarizer
        self.config = config
        self.progress = progress or ProgressChannel()
        self.state = Stage.IDLE

    async def process_file(self, path: Union[str, Path]) -> PipelineResult:
        return await self._run(lambda: self.ingestion.ingest_file(path))

    async def process_capture(self, session: CaptureSession) -> PipelineResult:
        return await self._run(lambda: self.ingestion.end_capture(session))

    def _enter(self, stage: Stage, fraction: float = 0.0) -> None:
        self.state = stage
        self.progress.publish(stage.value, STAGE_LABELS[stage], fraction)

    def _reporter(self, stage: Stage) -> Callable[[float], None]:
        def report(fraction: float) -> None:
            self.progress.publish(stage.value, STAGE_LABELS[stage], fraction)

        return report

    def _fail(self, stage: Stage, exc: BaseException) -> PipelineError:
        logging.error("Pipeline stage %s failed: %s", stage.value, exc)
        error = PipelineError(stage, str(exc))
        self.state = Stage.FAILED
        self.progress.publish(Stage.FAILED.value, str(error), 1.0)
        return error

    async def _run(self, ingest: Callable[[], Awaitable[AudioUnit]]) -> PipelineResult:
        self._enter(Stage.INGESTING)
        try:
            unit = await ingest()
        except Exception as exc:
            raise self._fail(Stage.INGESTING, exc) from exc

        try:
            return await self._process(unit)
        finally:
            self.ingestion.discard(unit)

    async def _process(self, unit: AudioUnit) -> PipelineResult:
        self._enter(Stage.PERSISTING_AUDIO)
        try:
            audio_id = await run_in_threadpool(self.storage.save_audio, unit)
        except Exception as exc:
            raise self._fail(Stage.PERSISTING_AUDIO, exc) from exc

        self._enter(Stage.MODEL_READY)
        try:
            model_used = await self._ensure_model()
        except (BusyError, LoadCancelled, ModelLoadError) as exc:
            raise self._fail(Stage.MODEL_READY, exc) from exc

        self._enter(Stage.TRANSCRIBING)
        try:
            transcript = await self.engine.transcribe(unit, self.config.language, self._reporter(Stage.TRANSCRIBING))
        except Exception as exc:
            raise self._fail(Stage.TRANSCRIBING, exc) from exc

        summary: Optional[str] = None
        if self.summarizer.has_valid_credential:
            self._enter(Stage.SUMMARIZING, 0.5)
            try:
                summary = await self.summarizer.summarize(
                    transcript, self.config.summary_length, self.config.language
                )
            except Exception as exc:
                logging.exception("Summarization failed")
                summary = f"Summary unavailable: {exc}"
            self.progress.publish(Stage.SUMMARIZING.value, STAGE_LABELS[Stage.SUMMARIZING], 1.0)

        self._enter(Stage.PERSISTING_TRANSCRIPT)
        try:
            transcript_id = await run_in_threadpool(
                self.storage.save_transcript,
                audio_id,
                unit.name,
                transcript,
                model_used,
                self.config.language,
                summary,
            )
        except Exception as exc:
            raise self._fail(Stage.PERSISTING_TRANSCRIPT, exc) from exc

        self._enter(Stage.DONE, 1.0)
        return PipelineResult(
            transcript_text=transcript,
            summary_text=summary,
            audio_id=audio_id,
            transcript_id=transcript_id,
            model_used=model_used,
        )

    async def _ensure_model(self) -> str:
        """Make the configured model (or the smallest one) active and return its name."""

        wanted = self.config.model
        if self.models.is_loaded(wanted):
            return wanted
        if self.models.is_loading:
            raise BusyError("Another model is still loading.")

        report = self._reporter(Stage.MODEL_READY)
        if await self.models.load_model(wanted, report):
            return wanted
        if self.models.last_load_cancelled:
            raise LoadCancelled(f"Loading of model '{wanted}' was cancelled.")

        logging.warning("Could not load %s; falling back to %s.", wanted, SMALLEST_MODEL)
        if await self.models.load_model(SMALLEST_MODEL, report):
            return SMALLEST_MODEL
        if self.models.last_load_cancelled:
            raise LoadCancelled(f"Loading of model '{SMALLEST_MODEL}' was cancelled.")
        raise ModelLoadError(f"Could not load model '{wanted}' or the fallback model '{SMALLEST_MODEL}'.")
