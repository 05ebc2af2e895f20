import asyncio
import threading

import httpx

from hearsay.pipeline import PipelineError, Stage
from hearsay.summarizer import SummarizationEngine

from fakes import LONG_TEXT, FakeLoader, FakeModel, make_pipeline, write_wav

VALID_KEY = "sk-" + "b" * 30


def _stages(pipeline):
    seen = []
    pipeline.progress.subscribe(lambda event: seen.append(event.stage) if event.stage not in seen else None)
    return seen


def test_file_runs_through_every_stage(tmp_path):
    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path)
    stages = _stages(pipeline)

    result = asyncio.run(pipeline.process_file(path))

    assert result.transcript_text == LONG_TEXT
    assert result.summary_text is None
    assert pipeline.state is Stage.DONE
    assert stages == [
        "ingesting",
        "persisting_audio",
        "model_ready",
        "transcribing",
        "persisting_transcript",
        "done",
    ]
    assert pipeline.storage.get_audio(result.audio_id).content == path.read_bytes()
    record = pipeline.storage.get_transcript_by_audio_id(result.audio_id)
    assert record.id == result.transcript_id
    assert record.file_name == "standup.wav"
    assert record.model_used == "whisper-base"
    assert record.language_code == "en"
    assert pipeline.progress.snapshot.fraction == 1.0


def test_summary_is_created_with_valid_credential(tmp_path):
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "Budget review."}}]})

    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, api_key=VALID_KEY, transport=httpx.MockTransport(handler))
    stages = _stages(pipeline)

    result = asyncio.run(pipeline.process_file(path))

    assert result.summary_text == "Budget review."
    assert "summarizing" in stages
    assert pipeline.storage.get_transcript(result.transcript_id).summary_text == "Budget review."


def test_summary_failure_becomes_placeholder(tmp_path):
    class ExplodingSummarizer(SummarizationEngine):
        async def summarize(self, text, tier, language):
            raise RuntimeError("summarizer exploded")

    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, summarizer=ExplodingSummarizer(VALID_KEY))

    result = asyncio.run(pipeline.process_file(path))

    assert pipeline.state is Stage.DONE
    assert result.summary_text == "Summary unavailable: summarizer exploded"


def test_model_falls_back_to_smallest(tmp_path):
    loader = FakeLoader(fail={"medium"})
    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, loader=loader, model="whisper-medium")

    result = asyncio.run(pipeline.process_file(path))

    assert loader.fetched == ["medium", "tiny"]
    assert result.model_used == "whisper-tiny"
    assert pipeline.storage.get_transcript(result.transcript_id).model_used == "whisper-tiny"


def test_both_model_loads_failing_fails_the_run(tmp_path):
    loader = FakeLoader(fail={"medium", "tiny"})
    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, loader=loader, model="whisper-medium")

    try:
        asyncio.run(pipeline.process_file(path))
    except PipelineError as exc:
        assert exc.stage is Stage.MODEL_READY
        assert "whisper-medium" in exc.reason and "whisper-tiny" in exc.reason
    else:
        raise AssertionError("Expected PipelineError")

    assert pipeline.state is Stage.FAILED
    assert loader.fetched == ["medium", "tiny"]
    assert len(pipeline.storage.get_recent()) == 1
    assert list(pipeline.storage.list_transcripts()) == []


def test_ingestion_failure_is_reported_verbatim(tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("not audio")
    pipeline = make_pipeline(tmp_path)

    try:
        asyncio.run(pipeline.process_file(notes))
    except PipelineError as exc:
        assert exc.stage is Stage.INGESTING
        assert exc.reason.startswith("Unsupported file type")
    else:
        raise AssertionError("Expected PipelineError")
    assert pipeline.storage.get_recent() == []


def test_transcription_failure_fails_the_run(tmp_path):
    loader = FakeLoader(model=FakeModel(error=RuntimeError("device lost")))
    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, loader=loader)

    try:
        asyncio.run(pipeline.process_file(path))
    except PipelineError as exc:
        assert exc.stage is Stage.TRANSCRIBING
        assert "device lost" in str(exc)
    else:
        raise AssertionError("Expected PipelineError")
    assert pipeline.state is Stage.FAILED
    assert pipeline.progress.snapshot.stage == "failed"


def test_loaded_model_is_reused_across_runs(tmp_path):
    loader = FakeLoader()
    pipeline = make_pipeline(tmp_path, loader=loader)
    first = write_wav(tmp_path / "one.wav", 1.0)
    second = write_wav(tmp_path / "two.wav", 1.0)

    async def scenario():
        await pipeline.process_file(first)
        await pipeline.process_file(second)

    asyncio.run(scenario())
    assert loader.fetched == ["base"]
    assert [entry.name for entry in pipeline.storage.get_recent()] == ["two.wav", "one.wav"]


async def _wait_until_loading(models):
    for _ in range(300):
        if models.is_loading:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("load never started")


def test_cancelled_load_does_not_fall_back(tmp_path):
    gate = threading.Event()
    loader = FakeLoader(gate=gate)
    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, loader=loader, model="whisper-medium")

    async def scenario():
        run = asyncio.create_task(pipeline.process_file(path))
        await _wait_until_loading(pipeline.models)
        assert pipeline.models.cancel_load() is True
        gate.set()
        return await run

    try:
        asyncio.run(scenario())
    except PipelineError as exc:
        assert exc.stage is Stage.MODEL_READY
        assert "cancelled" in exc.reason
    else:
        raise AssertionError("Expected PipelineError")

    assert loader.fetched == ["medium"]
    assert pipeline.models.current is None
    assert pipeline.state is Stage.FAILED
    assert list(pipeline.storage.list_transcripts()) == []


def test_run_fails_while_another_load_is_in_flight(tmp_path):
    gate = threading.Event()
    loader = FakeLoader(gate=gate)
    path = write_wav(tmp_path / "standup.wav", 2.0)
    pipeline = make_pipeline(tmp_path, loader=loader)

    async def scenario():
        loading = asyncio.create_task(pipeline.models.load_model("whisper-large"))
        await _wait_until_loading(pipeline.models)
        try:
            await pipeline.process_file(path)
        finally:
            gate.set()
            assert await loading is True

    try:
        asyncio.run(scenario())
    except PipelineError as exc:
        assert exc.stage is Stage.MODEL_READY
        assert "loading" in exc.reason
    else:
        raise AssertionError("Expected PipelineError")

    assert loader.fetched == ["large-v2"]
    assert pipeline.models.is_loaded("whisper-large")


def test_progress_stream_ends_with_the_run(tmp_path):
    path = write_wav(tmp_path / "standup.wav", 1.0)
    pipeline = make_pipeline(tmp_path)

    async def scenario():
        stages = []

        async def consume():
            async for event in pipeline.progress.stream():
                stages.append(event.stage)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await pipeline.process_file(path)
        await asyncio.wait_for(consumer, timeout=5)
        return stages

    stages = asyncio.run(scenario())
    assert stages[0] == "ingesting"
    assert stages[-1] == "done"


def test_progress_stream_ends_when_the_run_fails(tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("not audio")
    pipeline = make_pipeline(tmp_path)

    async def scenario():
        stages = []

        async def consume():
            async for event in pipeline.progress.stream():
                stages.append(event.stage)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        try:
            await pipeline.process_file(notes)
        except PipelineError:
            pass
        await asyncio.wait_for(consumer, timeout=5)
        return stages

    assert asyncio.run(scenario()) == ["ingesting", "failed"]
