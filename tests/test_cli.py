"""Tests for the command-line interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from mailweave.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def export_file(tmp_path: Path) -> Path:
    """Two unrelated messages and a reply to the first."""
    path = tmp_path / "export.json"
    path.write_text(
        json.dumps(
            [
                {"id": "1", "message_id": "<a@x>", "date": "2024-03-01T09:00:00Z", "subject": "Kickoff"},
                {
                    "id": "2",
                    "message_id": "<r@x>",
                    "date": "2024-03-01T09:30:00Z",
                    "subject": "Re: Kickoff",
                    "references": "<a@x>",
                },
                {"id": "3", "message_id": "<b@x>", "date": "2024-03-02T09:00:00Z", "subject": "Venue"},
            ]
        )
    )
    return path


def import_sample(runner: CliRunner, export_file: Path) -> None:
    result = runner.invoke(cli, ["import-messages", str(export_file)])
    assert result.exit_code == 0, result.output


class TestValidateConfig:
    """Tests for the validate-config command."""

    def test_valid_config(self, runner: CliRunner, config_file: Path) -> None:
        """Test a valid file exits 0."""
        result = runner.invoke(cli, ["validate-config", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_config(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test a missing file exits 1."""
        result = runner.invoke(cli, ["validate-config", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Load error" in result.output


@pytest.mark.usefixtures("set_config_env")
class TestStoreCommands:
    """Tests for commands that work against the database."""

    def test_init_db(self, runner: CliRunner, data_dir: Path) -> None:
        """Test the database file is created."""
        result = runner.invoke(cli, ["init-db"])
        assert result.exit_code == 0, result.output
        assert (data_dir / "mailweave.db").exists()

    def test_import_and_rethread(self, runner: CliRunner, export_file: Path) -> None:
        """Test imported messages are threaded and listed."""
        import_sample(runner, export_file)

        result = runner.invoke(cli, ["rethread"])
        assert result.exit_code == 0, result.output
        assert "Threads (2)" in result.output
        assert "3 message(s), 0 unread" in result.output

    def test_import_invalid_file(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test a malformed export exits 1 with an error."""
        path = tmp_path / "bad.json"
        path.write_text('{"id": "1"}')
        result = runner.invoke(cli, ["import-messages", str(path)])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_override_set_and_clear(self, runner: CliRunner, export_file: Path) -> None:
        """Test an override merges two threads until it is cleared."""
        import_sample(runner, export_file)

        assert runner.invoke(cli, ["override-set", "b@x", "a@x"]).exit_code == 0
        assert "Threads (1)" in runner.invoke(cli, ["rethread"]).output

        cleared = runner.invoke(cli, ["override-clear", "b@x"])
        assert "Removed 1" in cleared.output
        assert "Threads (2)" in runner.invoke(cli, ["rethread"]).output

    def test_group_create_and_delete(self, runner: CliRunner, export_file: Path) -> None:
        """Test grouping and ungrouping a selection."""
        import_sample(runner, export_file)

        created = runner.invoke(cli, ["group-create", "a@x", "b@x", "--target", "a@x"])
        assert created.exit_code == 0, created.output
        assert "Saved 1 group(s)" in created.output
        assert "Threads (1)" in runner.invoke(cli, ["rethread"]).output

        deleted = runner.invoke(cli, ["group-delete", "b@x"])
        assert deleted.exit_code == 0, deleted.output
        assert "deleted 1" in deleted.output
        assert "Threads (2)" in runner.invoke(cli, ["rethread"]).output

    def test_group_create_needs_two_threads(self, runner: CliRunner, export_file: Path) -> None:
        """Test grouping messages of one thread is refused."""
        import_sample(runner, export_file)
        result = runner.invoke(cli, ["group-create", "a@x", "r@x", "--target", "a@x"])
        assert result.exit_code == 1
        assert "Nothing to group" in result.output

    def test_migrate_overrides(self, runner: CliRunner, export_file: Path) -> None:
        """Test stored overrides are turned into groups."""
        import_sample(runner, export_file)
        runner.invoke(cli, ["override-set", "b@x", "a@x"])

        result = runner.invoke(cli, ["migrate-overrides"])
        assert result.exit_code == 0, result.output
        assert "1 group(s)" in result.output
        assert "Threads (1)" in runner.invoke(cli, ["rethread"]).output
