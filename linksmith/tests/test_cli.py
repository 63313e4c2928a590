"""Tests for the linksmith command-line interface."""

import json
import tempfile
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from loguru import logger

from linksmith.cli.main import cli

CATALOG_YAML = """\
- name: Jordan Smith
  category: people
  path: people/jordan-smith.md
- name: TypeScript
  category: technologies
  path: tech/typescript.md
- name: React
  category: technologies
  path: tech/react.md
"""

CONTENT = "Met with Jordan Smith to discuss TypeScript rollout"


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep loguru sinks from outliving the runner's captured streams."""
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def workspace():
    """Vault, state store and config file in a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        vault = root / "vault"
        (vault / "daily").mkdir(parents=True)
        (vault / "daily" / "2024-05-01.md").write_text("Paired with Jordan Smith on React\n")
        (vault / "daily" / "2024-05-02.md").write_text("Jordan Smith and React again\n")

        config_path = root / "linksmith.yaml"
        config_path.write_text(yaml.safe_dump({
            "vault_path": str(vault),
            "state_path": str(root / "state.duckdb"),
            "logging": {"level": "ERROR"},
        }))

        catalog_path = root / "catalog.yaml"
        catalog_path.write_text(CATALOG_YAML)

        yield {"root": root, "vault": vault, "config": str(config_path), "catalog": str(catalog_path)}


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, workspace, *args):
    return runner.invoke(cli, ["--config", workspace["config"], *args], obj={})


@pytest.fixture
def imported(runner, workspace):
    result = invoke(runner, workspace, "import-catalog", workspace["catalog"])
    assert result.exit_code == 0, result.output
    return workspace


class TestCatalogCommands:
    """Test catalog import and index rebuild."""

    def test_import_catalog(self, runner, workspace):
        result = invoke(runner, workspace, "import-catalog", workspace["catalog"])
        assert result.exit_code == 0
        assert "Imported 3 entities" in result.output

    def test_import_invalid_catalog(self, runner, workspace):
        bad = workspace["root"] / "bad.yaml"
        bad.write_text("not a list\n")
        result = invoke(runner, workspace, "import-catalog", str(bad))
        assert result.exit_code == 1
        assert "Invalid catalog" in result.output

    def test_rebuild_indexes(self, runner, imported):
        result = invoke(runner, imported, "rebuild-indexes")
        assert result.exit_code == 0, result.output
        assert "Scanned 2 notes" in result.output


class TestSuggestCommand:
    """Test the suggest command."""

    def test_plain(self, runner, imported):
        result = invoke(runner, imported, "suggest", CONTENT)
        assert result.exit_code == 0, result.output
        assert "→ [[Jordan Smith]]" in result.output

    def test_json(self, runner, imported):
        result = invoke(runner, imported, "suggest", CONTENT, "--strictness", "balanced", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["suggestions"] == ["Jordan Smith", "TypeScript"]
        assert data["suffix"] == "→ [[Jordan Smith]], [[TypeScript]]"

    def test_detail_json(self, runner, imported):
        result = invoke(runner, imported, "suggest", CONTENT, "--detail", "--json", "--max", "1")
        data = json.loads(result.output)
        assert len(data["detailed"]) == 1
        assert data["detailed"][0]["breakdown"]["content_match"] == 20

    def test_detail_table(self, runner, imported):
        result = invoke(runner, imported, "suggest", CONTENT, "--detail")
        assert result.exit_code == 0, result.output
        assert "content_match" in result.output

    def test_from_file(self, runner, imported):
        note = imported["root"] / "note.md"
        note.write_text(CONTENT)
        result = invoke(runner, imported, "suggest", "--file", str(note), "--json")
        assert json.loads(result.output)["suggestions"] == ["Jordan Smith"]

    def test_no_suggestions(self, runner, imported):
        result = invoke(runner, imported, "suggest", "Gardening plans")
        assert result.exit_code == 0
        assert "No suggestions" in result.output

    def test_missing_content(self, runner, imported):
        result = invoke(runner, imported, "suggest")
        assert result.exit_code == 2

    def test_max_out_of_range(self, runner, imported):
        result = invoke(runner, imported, "suggest", CONTENT, "--max", "11")
        assert result.exit_code == 1
        assert "Error" in result.output


class TestFeedbackCommands:
    """Test feedback, tracking and removal detection."""

    def test_feedback(self, runner, imported):
        result = invoke(runner, imported, "feedback", "TypeScript", "--note-path", "tech/a.md", "--incorrect")
        assert result.exit_code == 0, result.output
        assert "Recorded incorrect for TypeScript" in result.output

    def test_feedback_suppresses(self, runner, imported):
        for _ in range(9):
            invoke(runner, imported, "feedback", "TypeScript", "-n", "tech/a.md", "--incorrect")
        result = invoke(runner, imported, "feedback", "TypeScript", "-n", "tech/a.md", "--incorrect")
        assert "now suppressed" in result.output

        result = invoke(runner, imported, "suggest", CONTENT, "--strictness", "balanced", "--json")
        assert json.loads(result.output)["suggestions"] == ["Jordan Smith"]

    def test_track_and_check_removals(self, runner, imported):
        result = invoke(runner, imported, "track", "daily/2024-05-01.md", "Jordan Smith", "react")
        assert result.exit_code == 0, result.output
        assert "Tracking 2 link(s)" in result.output

        (imported["vault"] / "daily" / "2024-05-01.md").write_text("Paired with [[Jordan Smith]] on React\n")
        result = invoke(runner, imported, "check-removals", "daily/2024-05-01.md")
        assert result.exit_code == 0, result.output
        assert "[[react]] removed" in result.output

        result = invoke(runner, imported, "check-removals", "daily/2024-05-01.md")
        assert "No removed links" in result.output

    def test_check_removals_from_file(self, runner, imported):
        invoke(runner, imported, "track", "daily/2024-05-01.md", "TypeScript")
        current = imported["root"] / "current.md"
        current.write_text("[[TypeScript]] still here")
        result = invoke(runner, imported, "check-removals", "daily/2024-05-01.md", "--file", str(current))
        assert "No removed links" in result.output

    def test_check_removals_missing_note(self, runner, imported):
        result = invoke(runner, imported, "check-removals", "daily/missing.md")
        assert result.exit_code == 1
        assert "Note not found" in result.output


class TestReportingCommands:
    """Test journey and dashboard."""

    def test_journey(self, runner, imported):
        invoke(runner, imported, "feedback", "Jordan Smith", "-n", "daily/a.md", "--correct")
        invoke(runner, imported, "suggest", CONTENT)

        result = invoke(runner, imported, "journey", "Jordan Smith", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["entity"] == "Jordan Smith"
        assert data["stages"]["learn"]["total_feedback"] == 1
        assert data["stages"]["suggest"]["total_suggestions"] == 1

        result = invoke(runner, imported, "journey", "Jordan Smith")
        assert result.exit_code == 0, result.output
        assert "Discover" in result.output
        assert "learning" in result.output

    def test_dashboard(self, runner, imported):
        invoke(runner, imported, "feedback", "React", "-n", "tech/a.md", "--correct")
        invoke(runner, imported, "feedback", "React", "-n", "tech/a.md", "--incorrect")

        result = invoke(runner, imported, "dashboard", "--json")
        data = json.loads(result.output)
        assert data["total_feedback"] == 2
        assert data["overall_accuracy"] == 0.5

        result = invoke(runner, imported, "dashboard")
        assert result.exit_code == 0, result.output
        assert "Boost tiers" in result.output
        assert "React" in result.output
