"""FastAPI application for the hearsay transcription service."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .. import __version__
from ..config import load_config
from ..models import TranscriptionRecord
from ..pipeline import PipelineError, TranscriptionPipeline
from ..storage import NotFoundError, Storage


class HealthResponse(BaseModel):
    status: str = "ok"
    model: str
    loaded: bool
    loading: bool


class TranscriptPayload(BaseModel):
    id: str
    audio_id: str
    file_name: str
    transcript: str
    summary: Optional[str]
    model: str
    language: str
    created_at: datetime


class TranscriptionResponse(BaseModel):
    audio_id: str
    transcript_id: str
    transcript: str
    summary: Optional[str]
    model: str


class RecentPayload(BaseModel):
    id: str
    name: str
    timestamp: datetime


def _record_to_payload(record: TranscriptionRecord) -> TranscriptPayload:
    return TranscriptPayload(
        id=record.id,
        audio_id=record.audio_id,
        file_name=record.file_name,
        transcript=record.transcript_text,
        summary=record.summary_text,
        model=record.model_used,
        language=record.language_code,
        created_at=record.created_at,
    )


def _default_pipeline() -> TranscriptionPipeline:
    from ..cli import build_pipeline

    return build_pipeline(load_config())


def create_app(pipeline_factory: Callable[[], TranscriptionPipeline] = _default_pipeline) -> FastAPI:
    """Build the API around one explicitly constructed pipeline."""

    app = FastAPI(
        title="hearsay API",
        description="Transcription and summarization of uploaded audio and video clips.",
        version=__version__,
    )
    app.state.pipeline = pipeline_factory()
    # Runs share the model slot and the stage state, so they are serialised.
    app.state.run_lock = asyncio.Lock()

    def _pipeline(request: Request) -> TranscriptionPipeline:
        return request.app.state.pipeline

    def _storage(request: Request) -> Storage:
        return _pipeline(request).storage

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck(request: Request) -> HealthResponse:
        pipeline = _pipeline(request)
        name = pipeline.config.model
        return HealthResponse(model=name, loaded=pipeline.models.is_loaded(name), loading=pipeline.models.is_loading)

    @app.get("/recent", response_model=List[RecentPayload])
    async def recent(request: Request) -> List[RecentPayload]:
        entries = await run_in_threadpool(_storage(request).get_recent)
        return [RecentPayload(id=e.id, name=e.name, timestamp=e.timestamp) for e in entries]

    @app.get("/transcriptions", response_model=List[TranscriptPayload])
    async def list_transcriptions(request: Request, audio_id: Optional[str] = None) -> List[TranscriptPayload]:
        storage = _storage(request)
        if audio_id:
            records = await run_in_threadpool(storage.list_transcripts_for_audio, audio_id)
        else:
            records = await run_in_threadpool(lambda: list(storage.list_transcripts()))
        return [_record_to_payload(record) for record in records]

    @app.get("/transcriptions/{transcript_id}", response_model=TranscriptPayload)
    async def get_transcription(request: Request, transcript_id: str) -> TranscriptPayload:
        try:
            record = await run_in_threadpool(_storage(request).get_transcript, transcript_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return _record_to_payload(record)

    @app.get("/audio/{audio_id}/transcription", response_model=TranscriptPayload)
    async def get_transcription_for_audio(request: Request, audio_id: str) -> TranscriptPayload:
        record = await run_in_threadpool(_storage(request).get_transcript_by_audio_id, audio_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No transcript for audio {audio_id}")
        return _record_to_payload(record)

    @app.delete("/audio/{audio_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_audio(request: Request, audio_id: str) -> None:
        removed = await run_in_threadpool(_storage(request).delete_audio, audio_id)
        if not removed:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Audio file with id {audio_id} not found")

    @app.post("/transcriptions", response_model=TranscriptionResponse, status_code=status.HTTP_201_CREATED)
    async def create_transcription(request: Request, file: UploadFile = File(...)) -> TranscriptionResponse:
        pipeline = _pipeline(request)
        upload_dir = Path(tempfile.mkdtemp(prefix="hearsay-upload-"))
        destination = upload_dir / Path(file.filename or "audio.wav").name

        try:
            with destination.open("wb") as output:
                shutil.copyfileobj(file.file, output)
            async with request.app.state.run_lock:
                result = await pipeline.process_file(destination)
        except PipelineError as exc:
            raise HTTPException(
                status_code=422,
                detail={"stage": exc.stage.value, "message": exc.reason},
            ) from exc
        finally:
            shutil.rmtree(upload_dir, ignore_errors=True)

        return TranscriptionResponse(
            audio_id=result.audio_id,
            transcript_id=result.transcript_id,
            transcript=result.transcript_text,
            summary=result.summary_text,
            model=result.model_used,
        )

    return app
