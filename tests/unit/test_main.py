from types import SimpleNamespace
from unittest.mock import MagicMock
from typer.testing import CliRunner
from vea import main as vea_main
from vea.config.loader import load_encoder_config
from vea.domain.errors import DataInconsistency, SetupError
from vea.domain.models import CropRectangle


def _interrupting_time():
    return SimpleNamespace(sleep=MagicMock(side_effect=KeyboardInterrupt))


def test_init_encoder_writes_default(tmp_path):
    runner = CliRunner()
    target = tmp_path / "Movies" / "encoder.yaml"

    result = runner.invoke(vea_main.app, ["init-encoder", str(target)])

    assert result.exit_code == 0
    config, _ = load_encoder_config(target)
    assert config.video_encoder == "x265"


def test_init_encoder_refuses_to_overwrite(tmp_path):
    runner = CliRunner()
    target = tmp_path / "encoder.yaml"
    target.write_text("Quality: 18\n")

    result = runner.invoke(vea_main.app, ["init-encoder", str(target)])
    assert result.exit_code == 1
    assert target.read_text() == "Quality: 18\n"

    result = runner.invoke(vea_main.app, ["init-encoder", str(target), "--force"])
    assert result.exit_code == 0
    assert "Quality: 23" in target.read_text()


def test_run_missing_config_exits(tmp_path):
    runner = CliRunner()
    result = runner.invoke(vea_main.app, ["run", "--config", str(tmp_path / "missing.yaml")])
    assert result.exit_code == 1


def test_run_setup_error_exits(config_yaml_path, monkeypatch):
    agent = MagicMock()
    agent.start.side_effect = SetupError("Required executable not found: HandBrakeCLI")
    monkeypatch.setattr(vea_main, "EncodingAgent", MagicMock(return_value=agent))
    monkeypatch.setattr(vea_main, "setup_logging", MagicMock())

    result = CliRunner().invoke(vea_main.app, ["run", "--config", str(config_yaml_path)])

    assert result.exit_code == 1
    agent.shutdown.assert_not_called()


def test_run_applies_overrides_and_shuts_down(config_yaml_path, tmp_path, monkeypatch):
    created = {}
    agent = MagicMock()
    web = MagicMock()

    def fake_agent(config):
        created["config"] = config
        return agent

    monkeypatch.setattr(vea_main, "EncodingAgent", fake_agent)
    monkeypatch.setattr(vea_main, "VEAWebServer", MagicMock(return_value=web))
    monkeypatch.setattr(vea_main, "setup_logging", MagicMock())
    monkeypatch.setattr(vea_main, "time", _interrupting_time())

    log_path = tmp_path / "custom.log"
    result = CliRunner().invoke(
        vea_main.app,
        ["run", "--config", str(config_yaml_path), "--port", "9999", "--log-path", str(log_path), "--debug"],
    )

    assert result.exit_code == 0
    config = created["config"]
    assert config.web.port == 9999
    assert config.general.debug is True
    assert config.general.log_path == str(log_path)
    vea_main.VEAWebServer.assert_called_once_with(agent, port=9999, host="0.0.0.0")
    agent.start.assert_called_once()
    web.stop.assert_called_once()
    agent.shutdown.assert_called_once()


def test_run_without_web(config_yaml_path, monkeypatch):
    agent = MagicMock()
    monkeypatch.setattr(vea_main, "EncodingAgent", MagicMock(return_value=agent))
    monkeypatch.setattr(vea_main, "VEAWebServer", MagicMock())
    monkeypatch.setattr(vea_main, "setup_logging", MagicMock())
    monkeypatch.setattr(vea_main, "time", _interrupting_time())

    result = CliRunner().invoke(vea_main.app, ["run", "--config", str(config_yaml_path), "--no-web"])

    assert result.exit_code == 0
    vea_main.VEAWebServer.assert_not_called()
    agent.shutdown.assert_called_once()


def test_crop_missing_video_exits(tmp_path):
    result = CliRunner().invoke(vea_main.app, ["crop", str(tmp_path / "missing.ts")])
    assert result.exit_code == 1


def test_crop_prints_handbrake_value(tmp_path, monkeypatch):
    engine = MagicMock()
    engine.calculate.return_value = CropRectangle(
        left=0, right=1919, top=140, bottom=939, source_width=1920, source_height=1080
    )
    engine.frames_processed = 61
    agent = MagicMock()
    agent.create_crop_engine.return_value = engine
    created = {}

    def fake_agent(config):
        created["config"] = config
        return agent

    monkeypatch.setattr(vea_main, "EncodingAgent", fake_agent)

    result = CliRunner().invoke(
        vea_main.app, ["crop", str(tmp_path / "film.ts"), "--interval", "5", "--threads", "2"]
    )

    assert result.exit_code == 0
    assert "--crop 140:140:0:0" in result.output
    assert "(1920x1080) 140:939:0:1919" in result.output
    assert "Cropped size: 1920x800" in result.output
    assert created["config"].crop.capture_interval_s == 5
    assert created["config"].crop.max_threads == 2


def test_crop_without_content(tmp_path, monkeypatch):
    agent = MagicMock()
    agent.create_crop_engine.return_value.calculate.return_value = None
    monkeypatch.setattr(vea_main, "EncodingAgent", MagicMock(return_value=agent))

    result = CliRunner().invoke(vea_main.app, ["crop", str(tmp_path / "film.ts")])

    assert result.exit_code == 0
    assert "no crop" in result.output


def test_crop_failure_exits_cleanly(tmp_path, monkeypatch):
    agent = MagicMock()
    agent.create_crop_engine.return_value.calculate.side_effect = DataInconsistency("Inconsistent frame size")
    monkeypatch.setattr(vea_main, "EncodingAgent", MagicMock(return_value=agent))

    result = CliRunner().invoke(vea_main.app, ["crop", str(tmp_path / "film.ts")])

    assert result.exit_code == 1
    assert not isinstance(result.exception, DataInconsistency)
    assert "Inconsistent frame size" in result.output


def test_crop_undecodable_frame_exits_cleanly(tmp_path, monkeypatch):
    agent = MagicMock()
    agent.create_crop_engine.return_value.calculate.side_effect = OSError("cannot identify image file")
    monkeypatch.setattr(vea_main, "EncodingAgent", MagicMock(return_value=agent))

    result = CliRunner().invoke(vea_main.app, ["crop", str(tmp_path / "film.ts")])

    assert result.exit_code == 1
    assert "cannot identify image file" in result.output
