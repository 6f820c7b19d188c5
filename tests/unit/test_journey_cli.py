import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import json

import pytest

import journey_cli


JOURNEY = {
    "id": "cli",
    "name": "CLI journey",
    "steps": [
        {"id": "start", "request": {"method": "GET", "url": "/start"},
         "branches": [{"condition": {"status": 429}, "goto": "start"}]},
        {"id": "finish", "request": {"method": "GET", "url": "/finish"}},
    ],
}


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.delenv("JOURNEYRUNNER_CONFIG_FILE", raising=False)
    (tmp_path / "journeyrunner.config.json").write_text(json.dumps({"execution": {"virtualUsers": 2}}), encoding="utf-8")
    journey = tmp_path / "cli.journey.json"
    journey.write_text(json.dumps(JOURNEY), encoding="utf-8")
    profiles = tmp_path / "profiles.json"
    profiles.write_text(json.dumps({"profiles": [
        {"name": "a", "weight": 1, "data": [{"id": 1}]},
        {"name": "b", "weight": 1},
    ]}), encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    return tmp_path, journey, profiles


def test_validate_command(workspace, capsys):
    _, journey, _ = workspace
    assert journey_cli.main(["validate", str(journey)]) == 0
    assert "Journey 'CLI journey' is valid (2 steps, 0 warning(s))" in capsys.readouterr().out


def test_validate_command_reports_schema_errors(workspace, capsys):
    tmp_path, _, _ = workspace
    broken = tmp_path / "broken.journey.json"
    broken.write_text(json.dumps({"id": "x", "name": "X", "steps": [{"id": "a"}]}), encoding="utf-8")
    assert journey_cli.main(["validate", str(broken)]) == 1
    assert "steps.0.request" in capsys.readouterr().out


def test_paths_command(workspace, capsys):
    _, journey, _ = workspace
    assert journey_cli.main(["paths", str(journey)]) == 0
    out = capsys.readouterr().out
    assert "[cycle] start -> start" in out
    assert "[complete] start -> finish" in out


def test_sample_command(workspace, capsys):
    _, _, profiles = workspace
    assert journey_cli.main(["sample", str(profiles), "-n", "20", "--seed", "3"]) == 0
    out = capsys.readouterr().out
    assert "Drew 20 user(s):" in out
    assert "50.0% target" in out


def test_simulate_command(workspace, capsys):
    _, journey, profiles = workspace
    assert journey_cli.main(["simulate", str(journey), "--profiles", str(profiles), "--seed", "1"]) == 0
    out = capsys.readouterr().out
    assert "vu-1" in out and "vu-2" in out
    assert "completed after start -> finish" in out


def test_missing_file_returns_error_code(workspace, capsys):
    tmp_path, _, _ = workspace
    assert journey_cli.main(["paths", str(tmp_path / "nope.json")]) == 2
    assert "Error:" in capsys.readouterr().err
