"""Configuration loading with defaults for every recognized setting."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError

RETRO_HOME_ENV = "RETRO_HOME"


def retro_dir() -> Path:
    """Data directory, ~/.retro unless RETRO_HOME is set."""
    override = os.environ.get(RETRO_HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".retro"


@dataclass(frozen=True)
class DataPaths:
    """Well-known files inside the data directory."""

    root: Path

    @classmethod
    def default(cls) -> DataPaths:
        return cls(retro_dir())

    @property
    def config(self) -> Path:
        return self.root / "config.yaml"

    @property
    def database(self) -> Path:
        return self.root / "retro.db"

    @property
    def audit_log(self) -> Path:
        return self.root / "audit.jsonl"

    @property
    def lock(self) -> Path:
        return self.root / "retro.lock"

    @property
    def backups(self) -> Path:
        return self.root / "backups"

    @property
    def hook_log(self) -> Path:
        return self.root / "hook-stderr.log"


class AnalysisConfig(BaseModel):
    """Session analysis settings."""

    window_days: int = Field(default=14, ge=1, description="Days of history to consider")
    confidence_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for a pattern to be projected",
    )
    staleness_days: int = Field(default=28, ge=1)
    rolling_window: bool = Field(
        default=True,
        description="Re-analyze every session in the window instead of only new ones",
    )


class AIConfig(BaseModel):
    """AI collaborator settings."""

    backend: str = Field(default="claude-cli")
    model: str = Field(default="sonnet")


class HooksConfig(BaseModel):
    """Automatic (git hook) mode settings."""

    ingest_cooldown_minutes: int = Field(default=5, ge=0)
    analyze_cooldown_minutes: int = Field(default=1440, ge=0)
    apply_cooldown_minutes: int = Field(default=1440, ge=0)
    auto_apply: bool = Field(
        default=True,
        description="Chain analyze and apply after an automatic ingest",
    )
    auto_analyze_max_sessions: int = Field(
        default=15,
        ge=0,
        description="Skip automatic analysis when more sessions than this are pending",
    )


class PathsConfig(BaseModel):
    """Filesystem locations."""

    claude_dir: str = Field(default="~/.claude")


class PrivacyConfig(BaseModel):
    """What leaves the machine."""

    scrub_secrets: bool = Field(default=True)
    exclude_projects: list[str] = Field(default_factory=list)


class ClaudeMdConfig(BaseModel):
    """CLAUDE.md ownership settings."""

    full_management: bool = Field(
        default=False,
        description="Let retro edit the whole file instead of only its managed block",
    )


class RetroConfig(BaseModel):
    """Complete retro configuration."""

    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    privacy: PrivacyConfig = Field(default_factory=PrivacyConfig)
    claude_md: ClaudeMdConfig = Field(default_factory=ClaudeMdConfig)

    def claude_dir(self) -> Path:
        """Expanded Claude Code data directory."""
        return Path(self.paths.claude_dir).expanduser()

    @classmethod
    def load(cls, path: Path) -> RetroConfig:
        """Load configuration from YAML, falling back to defaults.

        Args:
            path: Path to config.yaml

        Returns:
            Validated configuration (defaults when the file is absent)

        Raises:
            ConfigError: If the file cannot be read, parsed or validated
        """
        if not path.exists():
            return cls()

        try:
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Failed to parse config YAML: {e}"
            raise ConfigError(msg, details={"path": str(path)}) from e
        except OSError as e:
            msg = f"Failed to read config file: {e}"
            raise ConfigError(msg, details={"path": str(path)}) from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            msg = f"Config must be a mapping, got {type(data).__name__}"
            raise ConfigError(msg, details={"path": str(path)})

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            msg = f"Config validation failed: {e}"
            raise ConfigError(msg, details={"path": str(path)}) from e

    def save(self, path: Path) -> None:
        """Write configuration as YAML.

        Raises:
            ConfigError: If the file cannot be written
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as f:
                yaml.safe_dump(self.model_dump(mode="json"), f, sort_keys=False)
        except OSError as e:
            msg = f"Failed to write config file: {e}"
            raise ConfigError(msg, details={"path": str(path)}) from e
