import json

from rich.console import Console
from typer.testing import CliRunner

from hearsay import cli, config
from hearsay.cli import app
from hearsay.models import AudioUnit
from hearsay.storage import Storage

runner = CliRunner()


def test_config_update_and_show(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")

    result = runner.invoke(app, ["config", "--model", "whisper-base", "--summary-length", "2"])
    assert result.exit_code == 0
    assert "Configuration updated." in result.output

    shown = runner.invoke(app, ["config", "--show"])
    assert json.loads(shown.output)["model"] == "whisper-base"
    assert json.loads(shown.output)["summary_length"] == 2


def test_config_rejects_unknown_model(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")

    result = runner.invoke(app, ["config", "--model", "whisper-huge"])
    assert result.exit_code == 1


def test_models_lists_catalog(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CONFIG_PATH", tmp_path / "config.json")

    result = runner.invoke(app, ["models"])
    assert result.exit_code == 0
    for name in config.MODEL_CATALOG:
        assert name in result.output


def test_list_shows_stored_transcripts(tmp_path, monkeypatch):
    store = Storage(db_path=tmp_path / "store.db")
    audio_id = store.save_audio(AudioUnit(content=b"RIFF", mime_type="audio/wav", duration_seconds=1.0, name="standup.wav"))
    transcript_id = store.save_transcript(audio_id, "standup.wav", "hello there", "whisper-base", "en")
    monkeypatch.setattr(cli, "Storage", lambda: store)
    monkeypatch.setattr(cli, "console", Console(width=200))

    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert transcript_id in result.output

    filtered = runner.invoke(app, ["list", "--audio-id", "unknown"])
    assert "No transcripts found" in filtered.output
