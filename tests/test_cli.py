"""Tests for the click CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

import mutabledht.config as config_module
from mutabledht.cli import cli
from mutabledht.config import load_config


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "data"
    monkeypatch.setenv("MUTABLEDHT_NODE_DATA_DIR", str(data_dir))
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "config.toml")
    return data_dir


@pytest.fixture
def loopback_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MUTABLEDHT_SESSION_ENGINE_FACTORY", "loopback:create_engine")
    monkeypatch.setenv("MUTABLEDHT_SESSION_BOOTSTRAP_TIMEOUT", "2")
    monkeypatch.setenv("MUTABLEDHT_RECORDS_RPC_GET_TIMEOUT", "0.5")


def _json(output: str) -> dict[str, object]:
    return json.loads(output)


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "mutabledht" in result.output


class TestKeys:
    def test_generate(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["keys", "generate"])
        assert result.exit_code == 0
        data = _json(result.stdout)
        assert len(bytes.fromhex(str(data["public_key"]))) == 32
        assert len(bytes.fromhex(str(data["private_key"]))) == 32

    def test_show_is_stable(self, runner: CliRunner) -> None:
        first = _json(runner.invoke(cli, ["keys", "show"]).stdout)
        second = _json(runner.invoke(cli, ["keys", "show"]).stdout)
        assert first == second
        assert "fingerprint" in first


class TestConfig:
    def test_show(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["config", "show"])
        assert result.exit_code == 0
        data = _json(result.stdout)
        assert data["records"]["put_cooldown_seconds"] == 60.0  # type: ignore[index]

    def test_set_persists(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["config", "set", "records.fetch_timeout", "5"])
        assert result.exit_code == 0
        assert _json(result.stdout) == {"records.fetch_timeout": 5.0}
        assert load_config(tmp_path / "config.toml").records.fetch_timeout == 5.0

    @pytest.mark.parametrize(
        "key", ["fetch_timeout", "nosuch.fetch_timeout", "records.nosuch"]
    )
    def test_set_rejects_bad_key(self, runner: CliRunner, key: str) -> None:
        result = runner.invoke(cli, ["config", "set", key, "5"])
        assert result.exit_code == 2

    def test_set_rejects_bad_value(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["config", "set", "records.fetch_timeout", "soon"]
        )
        assert result.exit_code == 2


class TestDhtCommands:
    def test_put_with_only_pubkey(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["put-mutable", "v", "s", "--pubkey", "00" * 32]
        )
        assert result.exit_code == 1
        data = _json(result.stdout)
        assert data["error"]["kind"] == "invalid_argument"  # type: ignore[index]

    def test_get_without_engine(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["get-mutable", "00" * 32, "s"])
        assert result.exit_code == 1
        data = _json(result.stdout)
        assert data["error"]["kind"] == "engine_unavailable"  # type: ignore[index]

    def test_bad_engine_factory(
        self, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("MUTABLEDHT_SESSION_ENGINE_FACTORY", "no_such_module:x")
        result = runner.invoke(cli, ["get-mutable", "00" * 32, "s"])
        assert result.exit_code == 1
        assert "Cannot load engine factory" in result.stdout

    @pytest.mark.usefixtures("loopback_engine")
    def test_put_end_to_end(self, runner: CliRunner, _isolated: Path) -> None:
        result = runner.invoke(cli, ["put-mutable", "hello", "greeting"])
        assert result.exit_code == 0, result.output
        data = _json(result.stdout)
        assert data["value"] == "hello"
        assert data["salt"] == "greeting"
        assert data["sequence"] == 1
        assert (_isolated / "mutable_data.db").exists()

    @pytest.mark.usefixtures("loopback_engine")
    def test_get_missing_item_times_out(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["get-mutable", "00" * 32, "s"])
        assert result.exit_code == 1
        data = _json(result.stdout)
        assert data["error"]["kind"] == "timeout"  # type: ignore[index]
