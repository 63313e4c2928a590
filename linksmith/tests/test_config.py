"""Tests for configuration and logging setup."""

import tempfile
from pathlib import Path

import pytest
from loguru import logger
from pydantic import ValidationError

from linksmith.engine.config import Config, SemanticSettings, SuggestionSettings, SuggestOptions
from linksmith.engine.log import setup_logging
from linksmith.engine.models import StrictnessMode


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestConfig:
    """Test configuration loading and validation."""

    def test_defaults(self, temp_dir):
        config = Config(vault_path=temp_dir / "vault")

        assert config.vault_path.exists()
        assert config.suggestions.strictness == StrictnessMode.CONSERVATIVE
        assert config.suggestions.max_suggestions == 3
        assert not config.semantic.enabled
        assert ".obsidian" in config.indexes.excluded_folders
        assert config.resolved_state_path == config.vault_path / ".linksmith" / "state.duckdb"

    def test_explicit_state_path(self, temp_dir):
        config = Config(vault_path=temp_dir, state_path=temp_dir / "state" / "db.duckdb")
        assert config.resolved_state_path == temp_dir / "state" / "db.duckdb"

    def test_save_and_load(self, temp_dir):
        config = Config(
            vault_path=temp_dir / "vault",
            suggestions=SuggestionSettings(strictness=StrictnessMode.BALANCED, max_suggestions=5),
        )
        path = temp_dir / "conf" / "linksmith.yaml"
        config.save(path)

        loaded = Config.load(path)
        assert loaded.vault_path == config.vault_path
        assert loaded.suggestions.strictness == StrictnessMode.BALANCED
        assert loaded.suggestions.max_suggestions == 5
        assert loaded.state_path is None

    def test_load_from_yaml(self, temp_dir):
        path = temp_dir / "linksmith.yaml"
        path.write_text(
            f"vault_path: {temp_dir / 'vault'}\n"
            "suggestions:\n"
            "  strictness: aggressive\n"
            "semantic:\n"
            "  enabled: true\n"
            "  timeout_seconds: 2.5\n"
        )
        config = Config.load(path)
        assert config.suggestions.strictness == StrictnessMode.AGGRESSIVE
        assert config.semantic.enabled
        assert config.semantic.timeout_seconds == 2.5

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            Config.load(temp_dir / "missing.yaml")

    def test_empty_file_needs_vault(self, temp_dir):
        path = temp_dir / "empty.yaml"
        path.write_text("")
        with pytest.raises(ValidationError):
            Config.load(path)

    def test_validation(self):
        with pytest.raises(ValidationError):
            SuggestionSettings(max_suggestions=11)
        with pytest.raises(ValidationError):
            SemanticSettings(timeout_seconds=0)


class TestSuggestOptions:
    """Test per-call options."""

    def test_defaults(self):
        options = SuggestOptions()
        assert options.max_suggestions == 3
        assert options.exclude_linked
        assert options.strictness == StrictnessMode.CONSERVATIVE
        assert options.note_path is None
        assert not options.detail

    def test_strictness_from_string(self):
        assert SuggestOptions(strictness="balanced").strictness == StrictnessMode.BALANCED
        with pytest.raises(ValidationError):
            SuggestOptions(strictness="extreme")

    def test_bounds(self):
        with pytest.raises(ValidationError):
            SuggestOptions(max_suggestions=0)
        assert SuggestOptions(max_suggestions=10).max_suggestions == 10


class TestLogging:
    """Test logging setup."""

    def test_file_sink(self, temp_dir):
        log_file = temp_dir / "logs" / "linksmith.log"
        setup_logging("debug", log_file=log_file)
        try:
            logger.info("hello from the test")
            assert log_file.exists()
            assert "hello from the test" in log_file.read_text()
        finally:
            logger.remove()
