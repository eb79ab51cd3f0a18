"""Tests for the click CLI."""

from pathlib import Path

import orjson
from click.testing import CliRunner

from telemetry_bridge.cli import main


ENVELOPE = {
    "telemetry": {
        "location": {"latitude": 12.5, "longitude": 77.6, "timestamp": "0001-01-01T00:00:00Z"},
        "timestamp": "2024-01-01T00:00:00Z",
        "raw_data": {"state": {"reported": {"21": 1, "113": 55, "999": "x"}}},
    }
}


def test_normalize_from_stdin() -> None:
    result = CliRunner().invoke(main, ["normalize", "--tenant-id", "fleet-7"], input=orjson.dumps(ENVELOPE))

    assert result.exit_code == 0, result.output
    record = orjson.loads(result.output)
    assert record["tenant_id"] == "fleet-7"
    assert record["state_data"] == {"ignition_state": 1}
    assert record["location_data"]["timestamp"] == "2024-01-01T00:00:00Z"


def test_normalize_rejects_garbage(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("{nope")
    result = CliRunner().invoke(main, ["normalize", str(path)])
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


def test_config_error_exits_nonzero(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["--config", str(tmp_path / "missing.json")])
    assert result.exit_code == 1


def test_secrets_roundtrip(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TELEMETRY_BRIDGE_SECRETS_FILE", str(tmp_path / "secrets.enc"))
    key = str(tmp_path / "master.key")
    runner = CliRunner()

    assert runner.invoke(main, ["secrets", "init", "--key-file", key]).exit_code == 0
    assert runner.invoke(
        main, ["secrets", "set", "DATABASE_URL", "--value", "sqlite://", "--key-file", key]
    ).exit_code == 0

    result = runner.invoke(main, ["secrets", "list", "--key-file", key])
    assert result.exit_code == 0
    assert result.output.split() == ["DATABASE_URL"]
    assert "sqlite://" not in result.output
