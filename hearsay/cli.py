"""Command line interface for the hearsay application."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Iterator, NoReturn, Optional

import typer
from fastapi.concurrency import run_in_threadpool
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from . import config as config_mod
from .audio import AudioIngestion, CapturePermissionError, IngestionError
from .config import MODEL_CATALOG, ConfigError
from .model_manager import ModelManager, WhisperLoader
from .models import Config
from .pipeline import PipelineError, PipelineResult, TranscriptionPipeline
from .progress import ProgressChannel
from .storage import Storage, StorageError
from .summarizer import RemoteSummarizer, SummarizationEngine, is_valid_credential
from .transcriber import TranscriptionEngine

app = typer.Typer(add_completion=False, help="Transcribe and summarise audio and video clips.")
console = Console()


def build_pipeline(cfg: Config, storage: Optional[Storage] = None) -> TranscriptionPipeline:
    models = ModelManager(WhisperLoader(device=cfg.device, timeout=cfg.api_timeout))
    remote = None
    if is_valid_credential(cfg.openai_api_key):
        remote = RemoteSummarizer(
            cfg.openai_api_key,
            url=cfg.summary_api_url,
            model=cfg.summary_model,
            temperature=cfg.summary_temperature,
            max_tokens=cfg.summary_max_tokens,
            timeout=cfg.api_timeout,
        )
    return TranscriptionPipeline(
        storage=storage or Storage(),
        ingestion=AudioIngestion(max_file_size_mb=cfg.max_file_size_mb),
        models=models,
        engine=TranscriptionEngine(models),
        summarizer=SummarizationEngine(cfg.openai_api_key, remote=remote),
        config=cfg,
        progress=ProgressChannel(),
    )


@contextmanager
def _progress_display(channel: ProgressChannel) -> Iterator[None]:
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting…", total=1.0)
        unsubscribe = channel.subscribe(
            lambda event: progress.update(task, description=event.label, completed=event.fraction)
        )
        try:
            yield
        finally:
            unsubscribe()


def _print_result(result: PipelineResult) -> None:
    typer.echo(result.transcript_text)
    if result.summary_text:
        typer.secho("\nSummary:\n" + result.summary_text, fg=typer.colors.GREEN)
    typer.secho(
        f"\nSaved transcript {result.transcript_id} for audio {result.audio_id} (model {result.model_used}).",
        fg=typer.colors.BLUE,
    )


def _fail(message: str, exc: BaseException) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def _load_config() -> Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        _fail(str(exc), exc)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if version:
        typer.echo(f"hearsay v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def transcribe(
    media: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio or video file."),
    model: Optional[str] = typer.Option(None, "--model", help="Override the configured model."),
    language: Optional[str] = typer.Option(None, "--language", help="Language code or 'auto'."),
) -> None:
    """Transcribe a file, summarise it when an API key is configured, and store the result."""

    cfg = _load_config()
    try:
        if model is not None:
            cfg.model = config_mod.validate_setting("model", model)
        if language is not None:
            cfg.language = config_mod.validate_setting("language", language)
    except ConfigError as exc:
        _fail(str(exc), exc)

    pipeline = build_pipeline(cfg)
    try:
        with _progress_display(pipeline.progress):
            result = asyncio.run(pipeline.process_file(media))
    except PipelineError as exc:
        _fail(str(exc), exc)
    _print_result(result)


@app.command()
def record() -> None:
    """Record from the microphone until Enter is pressed, then transcribe."""

    cfg = _load_config()
    pipeline = build_pipeline(cfg)

    async def run() -> PipelineResult:
        session = await pipeline.ingestion.begin_capture(
            lambda elapsed: console.print(f"Recording {elapsed}", end="\r")
        )
        try:
            await run_in_threadpool(input, "Recording… press Enter to stop.\n")
        except BaseException:
            pipeline.ingestion.discard(session)
            raise
        with _progress_display(pipeline.progress):
            return await pipeline.process_capture(session)

    try:
        result = asyncio.run(run())
    except CapturePermissionError as exc:
        _fail(f"Could not start recording: {exc}", exc)
    except (IngestionError, PipelineError) as exc:
        _fail(str(exc), exc)
    _print_result(result)


@app.command()
def recent() -> None:
    """List recently added audio clips."""

    storage = Storage()
    entries = storage.get_recent()
    if not entries:
        typer.echo("No recordings found. Use `hearsay transcribe` to add one.")
        return
    table = Table("Audio ID", "Name", "Added", "Transcript")
    for entry in entries:
        transcript = storage.get_transcript_by_audio_id(entry.id)
        table.add_row(
            entry.id,
            entry.name,
            f"{entry.timestamp:%Y-%m-%d %H:%M}",
            transcript.id if transcript else "-",
        )
    console.print(table)


@app.command()
def show(
    transcript_id: str = typer.Argument(..., help="Identifier of the transcript to display."),
) -> None:
    """Show a stored transcript."""

    storage = Storage()
    try:
        record = storage.get_transcript(transcript_id)
    except StorageError as exc:
        _fail(str(exc), exc)

    typer.secho(f"File: {record.file_name}", fg=typer.colors.BLUE)
    typer.echo(f"Created: {record.created_at:%Y-%m-%d %H:%M}")
    typer.echo(f"Model: {record.model_used}  Language: {record.language_code}")
    if record.summary_text:
        typer.secho("\nSummary:\n" + record.summary_text, fg=typer.colors.GREEN)
    typer.echo("\nTranscript:\n" + record.transcript_text)


@app.command("list")
def list_command(
    audio_id: Optional[str] = typer.Option(None, "--audio-id", help="Only list transcripts of this audio clip."),
) -> None:
    """List stored transcripts."""

    storage = Storage()
    if audio_id:
        rows = storage.list_transcripts_for_audio(audio_id)
    else:
        rows = list(storage.list_transcripts())
    if not rows:
        typer.echo("No transcripts found. Use `hearsay transcribe` to create one.")
        return
    table = Table("Transcript ID", "File", "Created", "Model", "Summary")
    for record in rows:
        table.add_row(
            record.id,
            record.file_name,
            f"{record.created_at:%Y-%m-%d %H:%M}",
            record.model_used,
            "yes" if record.summary_text else "-",
        )
    console.print(table)


@app.command()
def delete(
    audio_id: str = typer.Argument(..., help="Identifier of the audio clip to delete."),
) -> None:
    """Delete an audio clip together with its transcripts."""

    storage = Storage()
    try:
        removed = storage.delete_audio(audio_id)
    except StorageError as exc:
        _fail(str(exc), exc)
    if not removed:
        typer.secho(f"Audio {audio_id} not found.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)
    typer.secho(f"Audio {audio_id} and its transcripts deleted.", fg=typer.colors.BLUE)


@app.command()
def models() -> None:
    """List the available transcription models."""

    cfg = _load_config()
    table = Table("Model", "Name", "Size", "Speed", "")
    for key, entry in MODEL_CATALOG.items():
        table.add_row(key, entry["name"], entry["size"], entry["speed"], "configured" if key == cfg.model else "")
    console.print(table)


@app.command()
def config(
    model: Optional[str] = typer.Option(None, help="Transcription model (see `hearsay models`)."),
    summary_length: Optional[int] = typer.Option(None, min=1, max=5, help="Summary length from 1 (shortest) to 5."),
    language: Optional[str] = typer.Option(None, help="Language code (sv, en or auto)."),
    openai_api_key: Optional[str] = typer.Option(None, help="API key used for hosted summaries."),
    max_file_size_mb: Optional[int] = typer.Option(None, help="Size above which a file triggers a warning."),
    device: Optional[str] = typer.Option(None, help="Inference device (auto, cpu, cuda)."),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP timeout (seconds) for downloads and summaries."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "model": model,
            "summary_length": summary_length,
            "language": language,
            "openai_api_key": openai_api_key,
            "max_file_size_mb": max_file_size_mb,
            "device": device,
            "api_timeout": api_timeout,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        typer.echo(json.dumps(asdict(cfg), indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _fail(str(exc), exc)
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind."),
    port: int = typer.Option(8000, help="Port to listen on."),
) -> None:  # pragma: no cover - starts a server
    """Run the HTTP API."""

    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    app()
