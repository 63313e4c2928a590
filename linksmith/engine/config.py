"""Configuration management for linksmith."""

from pathlib import Path
from typing import Optional, List

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from .models import StrictnessMode


class SuggestionSettings(BaseModel):
    strictness: StrictnessMode = StrictnessMode.CONSERVATIVE
    max_suggestions: int = Field(default=3, ge=1, le=10)
    record_events: bool = True


class SemanticSettings(BaseModel):
    enabled: bool = False
    model: str = "all-MiniLM-L6-v2"
    timeout_seconds: float = 5.0
    failure_threshold: int = 3
    recovery_timeout: float = 60.0

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class IndexSettings(BaseModel):
    cooccurrence_min_count: float = 0.5
    recency_refresh_minutes: int = 60
    excluded_folders: List[str] = Field(
        default_factory=lambda: [".git", ".obsidian", ".linksmith", "node_modules", "templates"]
    )


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None
    rotation: str = "1 day"
    retention: str = "7 days"


class Config(BaseModel):
    """Main configuration for the linksmith engine."""

    vault_path: Path
    state_path: Optional[Path] = None
    suggestions: SuggestionSettings = Field(default_factory=SuggestionSettings)
    semantic: SemanticSettings = Field(default_factory=SemanticSettings)
    indexes: IndexSettings = Field(default_factory=IndexSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator('vault_path')
    @classmethod
    def validate_vault_path(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.exists():
            logger.warning(f"Vault path does not exist, will create: {v}")
            v.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def resolved_state_path(self) -> Path:
        if self.state_path is not None:
            return Path(self.state_path).expanduser()
        return self.vault_path / ".linksmith" / "state.duckdb"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            # Try default locations
            candidates = [
                Path("linksmith.yaml"),
                Path.home() / ".config" / "linksmith" / "config.yaml",
                Path("/etc/linksmith/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)


class SuggestOptions(BaseModel):
    """Per-call options for ``SuggestionEngine.suggest``."""

    max_suggestions: int = Field(default=3, ge=1, le=10)
    exclude_linked: bool = True
    strictness: StrictnessMode = StrictnessMode.CONSERVATIVE
    note_path: Optional[str] = None
    detail: bool = False
