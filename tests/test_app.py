"""CLI and wiring tests. No server is started."""
import sys

import pytest

from voxflow import app
from voxflow.config import Settings
from voxflow.host import DownloadProgress, NotifyStatus
from voxflow.orchestrator import SessionState


class TestBuildOrchestrator:
    @pytest.mark.unit
    def test_wiring(self, model_folder):
        settings = Settings(
            custom_model_folder=str(model_folder),
            whisper_model="test",
            silence_duration_seconds=2.0,
            llm_api_key="sk",
        )

        orchestrator = app.build_orchestrator(settings)

        assert orchestrator.state is SessionState.IDLE
        assert orchestrator.capture.detector.silence_duration == 2.0
        assert orchestrator.models.marker == "ggml-test.bin"
        assert orchestrator.models.is_downloaded()
        assert orchestrator.correction_enabled
        assert isinstance(orchestrator.status, NotifyStatus)
        assert isinstance(orchestrator.progress, DownloadProgress)


class TestCli:
    @pytest.mark.unit
    def test_unknown_command_exits(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["voxflow", "dance"])

        with pytest.raises(SystemExit) as exc:
            app.main()

        assert exc.value.code == 1
        assert "Unknown command" in capsys.readouterr().err

    @pytest.mark.unit
    def test_send_command_without_server(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr(app, "SOCKET_PATH", str(tmp_path / "missing.sock"))

        assert not app.send_command("toggle")
        assert "not running" in capsys.readouterr().err

    @pytest.mark.unit
    def test_command_without_server_exits(self, monkeypatch, tmp_path):
        monkeypatch.setattr(app, "SOCKET_PATH", str(tmp_path / "missing.sock"))
        monkeypatch.setattr(sys, "argv", ["voxflow", "toggle"])

        with pytest.raises(SystemExit) as exc:
            app.main()

        assert exc.value.code == 1
