import asyncio
import threading
from types import SimpleNamespace

from hearsay.model_manager import ModelManager, checkpoint_url, resolve_model_id

from fakes import FakeLoader


async def _wait_until_loading(manager):
    for _ in range(100):
        if manager.is_loading:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("load never started")


def test_catalog_resolution_falls_back_to_default():
    assert resolve_model_id("whisper-large") == "large-v2"
    assert resolve_model_id("whisper-small") == "small"
    assert resolve_model_id("no-such-model") == "tiny"


def test_load_model_reports_progress_and_caches():
    loader = FakeLoader()
    manager = ModelManager(loader)
    progress = []

    assert asyncio.run(manager.load_model("whisper-base", progress.append)) is True

    assert manager.is_loaded("whisper-base")
    assert not manager.is_loaded("whisper-small")
    assert loader.fetched == ["base"]
    assert progress[0] == 0.0
    assert progress[-1] == 1.0
    assert progress == sorted(progress)
    assert all(0.0 <= value <= 1.0 for value in progress)


def test_failed_load_returns_false_and_keeps_previous_model():
    loader = FakeLoader(fail={"medium"})
    manager = ModelManager(loader)

    async def scenario():
        assert await manager.load_model("whisper-base")
        assert await manager.load_model("whisper-medium") is False

    asyncio.run(scenario())
    assert manager.is_loaded("whisper-base")
    assert not manager.is_loading


def test_successful_load_replaces_cached_model():
    manager = ModelManager(FakeLoader())

    async def scenario():
        await manager.load_model("whisper-base")
        await manager.load_model("whisper-small")

    asyncio.run(scenario())
    assert manager.is_loaded("whisper-small")
    assert not manager.is_loaded("whisper-base")


def test_second_load_while_pending_is_rejected():
    gate = threading.Event()
    loader = FakeLoader(gate=gate)
    manager = ModelManager(loader)

    async def scenario():
        gate.set()
        assert await manager.load_model("whisper-base")
        gate.clear()

        first = asyncio.create_task(manager.load_model("whisper-small"))
        await _wait_until_loading(manager)

        assert await manager.load_model("whisper-medium") is False
        assert manager.current.name == "whisper-base"
        assert not manager.is_loaded("whisper-base")

        gate.set()
        assert await first is True

    asyncio.run(scenario())
    assert loader.fetched == ["base", "small"]
    assert manager.is_loaded("whisper-small")


def test_cancel_load_reports_false():
    gate = threading.Event()
    manager = ModelManager(FakeLoader(gate=gate))

    async def scenario():
        assert manager.cancel_load() is False
        pending = asyncio.create_task(manager.load_model("whisper-small"))
        await _wait_until_loading(manager)
        assert manager.cancel_load() is True
        gate.set()
        return await pending

    assert asyncio.run(scenario()) is False
    assert not manager.is_loading
    assert manager.last_load_cancelled
    assert manager.current is None
    assert not manager.is_loaded("whisper-small")


def test_failed_load_is_not_reported_as_cancelled():
    manager = ModelManager(FakeLoader(fail={"small"}))
    assert asyncio.run(manager.load_model("whisper-small")) is False
    assert not manager.last_load_cancelled


def test_checkpoint_url_lookup():
    url = "https://example.invalid/models/abc123/tiny.pt"
    assert checkpoint_url(SimpleNamespace(_MODELS={"tiny": url}), "tiny") == url

    for module, message in ((SimpleNamespace(_MODELS={}), "Unknown whisper checkpoint"), (SimpleNamespace(), "checkpoint table")):
        try:
            checkpoint_url(module, "tiny")
        except RuntimeError as exc:
            assert message in str(exc)
        else:
            raise AssertionError("Expected RuntimeError")
