"""Bootstrap wiring and CLI tests on the synthetic backend."""

import json
from pathlib import Path

import pytest
import yaml

from screendoc.__main__ import main, parse_region
from screendoc.core.backends import SourceOption, SyntheticBackend
from screendoc.core.bootstrap import (
    bootstrap_from_config, bootstrap_from_config_object, build_backend, load_app_config
)
from screendoc.core.configs import create_default_config
from screendoc.core.controller import ControllerState


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "app.yaml"
    path.write_text(yaml.dump({
        "capture": {"backend": "synthetic", "interval_sec": 1.0},
        "data": {"base_dir": str(tmp_path / "data")},
        "logging": {"level": "WARNING"},
    }))
    return path


def test_build_backend():
    config = create_default_config()
    config.capture.backend = "synthetic"
    assert isinstance(build_backend(config), SyntheticBackend)


def test_components(tmp_path):
    config = create_default_config()
    config.data.base_dir = str(tmp_path)
    components = bootstrap_from_config_object(
        config, backend=SyntheticBackend(), with_analyzer=False, init_logging=False
    )
    assert set(components) == {"config", "backend", "adapter", "cache", "archive", "analyzer", "controller"}
    assert components["analyzer"] is None
    assert components["cache"].capacity == 30
    assert components["controller"].state == ControllerState.IDLE


def test_capture_persists_to_archive(config_file):
    components = bootstrap_from_config(config_file, with_analyzer=False, init_logging=False)
    controller = components["controller"]
    with controller:
        controller.select_source()
        controller.start_capture("demo")
        controller.stop_capture()
        controller.scheduler.flush(timeout=5.0)

    records = components["archive"].list_screenshots("demo")
    assert len(records) == 1
    assert components["backend"].live_tracks == 0


def test_parse_region():
    assert parse_region("0, 10, 300, 200") == (0, 10, 300, 200)
    with pytest.raises(Exception):
        parse_region("1,2,3")


def test_cli_capture_writes_summary(config_file, tmp_path):
    code = main(["--config", str(config_file), "capture", "--duration", "0.2", "--yes", "--session", "cli"])
    assert code == 0

    summaries = list((tmp_path / "data" / "summaries").glob("capture_*.json"))
    assert len(summaries) == 1
    summary = json.loads(summaries[0].read_text())
    assert summary["session"] == "cli"
    assert summary["backend"] == "synthetic"
    assert summary["screenshots"] >= 1


def test_cli_sources(config_file, capsys):
    assert main(["--config", str(config_file), "sources"]) == 0
    assert "Synthetic" in capsys.readouterr().out


class TwoMonitorBackend(SyntheticBackend):
    def list_sources(self):
        return [
            SourceOption(monitor=1, label="Synthetic left", width=self.width, height=self.height),
            SourceOption(monitor=2, label="Synthetic right", width=self.width, height=self.height),
        ]


@pytest.mark.parametrize("monitor,expected", [(2, 2), (1, 1), (5, 1)])
def test_configured_monitor_is_selected(tmp_path, monitor, expected):
    config = create_default_config()
    config.data.base_dir = str(tmp_path)
    config.capture.monitor = monitor
    components = bootstrap_from_config_object(
        config, backend=TwoMonitorBackend(), with_analyzer=False, init_logging=False
    )
    with components["controller"] as controller:
        source = controller.select_source()
        assert source.selection.monitor == expected


def test_cli_reads_config_path_from_env(config_file, tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("SCREENDOC_CONFIG", str(config_file))
    monkeypatch.chdir(tmp_path)

    assert main(["sources"]) == 0
    assert "Synthetic" in capsys.readouterr().out


def test_load_app_config_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("SCREENDOC_CONFIG", str(tmp_path / "missing.yaml"))
    assert load_app_config().capture.backend == "mss"
    with pytest.raises(FileNotFoundError):
        load_app_config(tmp_path / "missing.yaml")
