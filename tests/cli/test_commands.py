"""CLI command tests using Click CliRunner.

Most tests point the CLI at a config file whose db_path lives in tmp_path,
so commands run against a real SQLite store. The long-running ``run``
command gets a mocked get_components.
"""

from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from cli.main import cli
from memory.models import Memory
from memory.store import MemoryStore
from shared_types import ComponentKind, MemoryType
from supervisor.breaker import CircuitBreakerRegistry


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "cortex.yaml"
    path.write_text(yaml.safe_dump({"paths": {"db_path": str(tmp_path / "cortex.db")}}))
    return path


@pytest.fixture
def cli_store(tmp_path, config_file):
    return MemoryStore(tmp_path / "cortex.db")


def _invoke(runner, config_file, *args):
    return runner.invoke(cli, ["-c", str(config_file), *args])


class TestMain:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_invalid_config_exits(self, runner, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("breaker:\n  threshold: 0\n")
        result = runner.invoke(cli, ["-c", str(bad), "breaker", "list"])
        assert result.exit_code == 1
        assert "Config error" in result.output


class TestBreakerCommands:
    def test_list_empty(self, runner, config_file):
        result = _invoke(runner, config_file, "breaker", "list")
        assert result.exit_code == 0
        assert "No breakers tracked" in result.output

    def test_list_and_reset(self, runner, config_file, tmp_path):
        registry = CircuitBreakerRegistry(tmp_path / "cortex.db")
        for _ in range(3):
            registry.record_failure(ComponentKind.TOOL, "search", "HTTP 503")

        result = _invoke(runner, config_file, "breaker", "list", "--open")
        assert result.exit_code == 0
        assert "search" in result.output

        result = _invoke(runner, config_file, "breaker", "reset", "tool", "search")
        assert result.exit_code == 0
        assert "Reset" in result.output
        assert registry.is_open(ComponentKind.TOOL, "search") is False

    def test_reset_unknown(self, runner, config_file):
        result = _invoke(runner, config_file, "breaker", "reset", "worker", "ghost")
        assert result.exit_code == 0
        assert "No breaker" in result.output

    def test_reset_rejects_unknown_kind(self, runner, config_file):
        result = _invoke(runner, config_file, "breaker", "reset", "robot", "x")
        assert result.exit_code != 0


class TestMemoryCommands:
    def test_status(self, runner, config_file, cli_store):
        cli_store.add(Memory(id="a", content="Deploys run on Fridays", memory_type=MemoryType.FACT))
        result = _invoke(runner, config_file, "memory", "status")
        assert result.exit_code == 0
        assert "Active memories: 1" in result.output
        assert "fact: 1" in result.output

    def test_consolidate_prune_then_revert(self, runner, config_file, cli_store):
        cli_store.add(Memory(id="low", content="Faded", memory_type=MemoryType.FACT, importance=0.01))

        result = _invoke(runner, config_file, "memory", "consolidate", "--only", "prune")
        assert result.exit_code == 0
        assert "Pruned: 1" in result.output
        assert cli_store.get("low").is_active is False

        entry = cli_store.ledger()[0]
        result = _invoke(runner, config_file, "memory", "log")
        assert result.exit_code == 0
        assert "prune" in result.output

        result = _invoke(runner, config_file, "memory", "revert", str(entry.id))
        assert "Reverted" in result.output
        assert cli_store.get("low").is_active

        result = _invoke(runner, config_file, "memory", "revert", str(entry.id))
        assert "Nothing to revert" in result.output

    def test_restore(self, runner, config_file, cli_store):
        cli_store.add(Memory(id="low", content="Faded", memory_type=MemoryType.FACT, importance=0.01))
        _invoke(runner, config_file, "memory", "consolidate", "--only", "prune")

        result = _invoke(runner, config_file, "memory", "restore", "low")
        assert "Restored" in result.output
        result = _invoke(runner, config_file, "memory", "restore", "low")
        assert "is not pruned" in result.output

    def test_empty_log(self, runner, config_file):
        result = _invoke(runner, config_file, "memory", "log")
        assert "Ledger is empty" in result.output

    def test_bulletin(self, runner, config_file, cli_store):
        cli_store.add(Memory(id="i", content="Assistant name is Juniper", memory_type=MemoryType.IDENTITY))
        result = _invoke(runner, config_file, "memory", "bulletin")
        assert result.exit_code == 0
        assert "Assistant name is Juniper" in result.output

    def test_bulletin_disabled(self, runner, tmp_path):
        path = tmp_path / "off.yaml"
        path.write_text(
            yaml.safe_dump({"paths": {"db_path": str(tmp_path / "c.db")}, "bulletin": {"enabled": False}})
        )
        result = _invoke(runner, path, "memory", "bulletin")
        assert "Bulletin disabled" in result.output


class TestLoopCommands:
    def test_tick(self, runner, config_file):
        result = _invoke(runner, config_file, "tick")
        assert result.exit_code == 0
        assert "Signals processed: 0" in result.output

    def test_tick_with_consolidation(self, runner, config_file, cli_store):
        cli_store.add(Memory(id="low", content="Faded", memory_type=MemoryType.FACT, importance=0.01))
        result = _invoke(runner, config_file, "tick", "--consolidate")
        assert result.exit_code == 0
        assert "Consolidation" in result.output
        assert "pruned=1" in result.output

    def test_run_stops_on_interrupt(self, runner, config_file):
        cortex = MagicMock(tick_interval=0.01)
        with (
            patch("cli.commands.run.get_components", return_value={"cortex": cortex}),
            patch("cli.commands.run.time.sleep", side_effect=KeyboardInterrupt),
        ):
            result = _invoke(runner, config_file, "run")
        assert result.exit_code == 0
        cortex.start.assert_called_once()
        cortex.stop.assert_called_once()
        assert "Stopped" in result.output
