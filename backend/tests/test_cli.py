"""Tests for the codeseek command line."""

import json

import pytest
from click.testing import CliRunner

from codeseek import cli as cli_module
from codeseek.cli import cli


@pytest.fixture
def runner(monkeypatch):
    # Leave pytest's log capture in place
    monkeypatch.setattr(cli_module, "configure_logging", lambda level=None: None)
    return CliRunner()


@pytest.fixture
def base_args(tmp_path):
    return ["--backend", "hashing", "--shards", "0", "--model-cache", str(tmp_path / "models")]


class TestCLI:
    """Test cases for the codeseek command."""

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for word in ("index", "search", "status", "--db-path", "--model-cache", "--shards", "--verbose"):
            assert word in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "codeseek" in result.output

    def test_index(self, runner, base_args, project):
        result = runner.invoke(cli, base_args + ["-o", "json", "index", str(project)])

        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary["files_total"] == 5
        assert summary["files_succeeded"] == 4
        assert summary["files_skipped"] == 1
        assert summary["files_failed"] == 0
        assert summary["chunks_indexed"] > 0
        assert (project / ".codeseek" / "files.db").is_file()

    def test_index_table(self, runner, base_args, project):
        result = runner.invoke(cli, base_args + ["index", str(project)])

        assert result.exit_code == 0, result.output
        assert "Unchanged" in result.output
        assert "chunks in" in result.output

    def test_reindex_is_incremental(self, runner, base_args, project):
        runner.invoke(cli, base_args + ["index", str(project)])
        result = runner.invoke(cli, base_args + ["-o", "json", "index", str(project)])

        assert json.loads(result.output)["files_unchanged"] == 4

    def test_search(self, runner, base_args, project):
        runner.invoke(cli, base_args + ["index", str(project)])

        result = runner.invoke(cli, base_args + ["search", "multiply numbers", "-d", str(project), "-n", "3"])

        assert result.exit_code == 0, result.output
        assert "Found" in result.output
        assert "src/math_utils.py" in result.output
        assert "def multiply_numbers(a, b):" in result.output

    def test_search_json_with_language_filter(self, runner, base_args, project):
        runner.invoke(cli, base_args + ["index", str(project)])

        result = runner.invoke(
            cli, base_args + ["-o", "json", "search", "fetch user", "-d", str(project), "-l", "javascript"]
        )

        assert result.exit_code == 0, result.output
        results = json.loads(result.output)
        assert results
        assert {r["file_path"] for r in results} == {"web/client.js"}

    def test_search_empty_index(self, runner, base_args, project):
        result = runner.invoke(cli, base_args + ["search", "anything", "-d", str(project)])

        assert result.exit_code == 0, result.output
        assert "No results found." in result.output

    def test_empty_query_fails(self, runner, base_args, project):
        result = runner.invoke(cli, base_args + ["search", "   ", "-d", str(project)])

        assert result.exit_code == 1
        assert "must not be empty" in result.output

    def test_status(self, runner, base_args, project):
        runner.invoke(cli, base_args + ["index", str(project)])

        result = runner.invoke(cli, base_args + ["-o", "json", "status", "-d", str(project)])

        assert result.exit_code == 0, result.output
        status = json.loads(result.output)
        assert status["ready"] is True
        assert status["stats"]["total_files"] == 4
        assert status["index_path"] == str(project.resolve() / ".codeseek")

    def test_status_table(self, runner, base_args, project):
        result = runner.invoke(cli, base_args + ["status", "-d", str(project)])

        assert result.exit_code == 0, result.output
        assert "Files indexed" in result.output
        assert "Never" in result.output

    def test_db_path(self, runner, base_args, project, tmp_path):
        db_path = tmp_path / "custom-index"

        indexed = runner.invoke(cli, base_args + ["--db-path", str(db_path), "index", str(project)])
        status = runner.invoke(cli, base_args + ["--db-path", str(db_path), "-o", "json", "status", "-d", str(project)])

        assert indexed.exit_code == 0, indexed.output
        assert (db_path / "files.db").is_file()
        assert not (project / ".codeseek").exists()
        assert json.loads(status.output)["stats"]["total_files"] == 4

    def test_missing_directory(self, runner, base_args, tmp_path):
        result = runner.invoke(cli, base_args + ["index", str(tmp_path / "nope")])

        assert result.exit_code == 2

    def test_negative_shards_rejected(self, runner, project):
        result = runner.invoke(cli, ["--shards", "-1", "status", "-d", str(project)])

        assert result.exit_code == 2
