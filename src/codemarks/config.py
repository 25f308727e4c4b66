"""
Configuration module for codemarks.

Provides strongly-typed configuration with pydantic. The configuration
document lives at ``~/.codemarks/config.yaml`` and every field can also be
overridden with ``CODEMARKS_`` environment variables.
"""

from __future__ import annotations

import re
from typing import Literal

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from codemarks.core import ConfigurationError, atomic_write_text, get_config_path

logger = structlog.get_logger(__name__)

DEFAULT_ANNOTATION_PATTERN = (
    r"(?i)(?://+|#+|<!--|/\*+|\*|--|;+)\s*"
    r"(?P<kind>TODO|FIXME|HACK)\b\s*:?\s*"
    r"(?P<message>.*?)\s*(?:-->|\*/)?\s*$"
)


class ScanConfig(BaseModel):
    """Directory traversal and extraction settings."""

    ignore_patterns: list[str] = Field(
        default_factory=lambda: [
            "node_modules/",
            "__pycache__/",
            "*.pyc",
            "*.min.js",
            "*.min.css",
            "*.map",
        ],
        description="Extra exclusions in gitignore syntax, applied on top of ignore files",
    )
    ignore_filenames: list[str] = Field(
        default_factory=lambda: [".gitignore", ".ignore", ".codemarksignore"],
        description="Names of per-directory ignore files to honour",
    )
    include_hidden: bool = Field(
        default=False,
        description="Descend into dot-directories and scan dot-files",
    )
    max_file_size_kb: int = Field(
        default=1024,
        ge=1,
        le=1048576,
        description="Files larger than this are skipped",
    )
    max_line_length: int | None = Field(
        default=None,
        ge=80,
        description="Optional cap; longer lines never count as annotations",
    )
    workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Threads used to read and match files",
    )


class WatchConfig(BaseModel):
    """File system watcher configuration."""

    debounce_ms: int = Field(
        default=500,
        ge=10,
        le=60000,
        description="Quiet period after the last change before a rescan",
    )
    queue_size: int = Field(
        default=1024,
        ge=1,
        le=1_000_000,
        description="Capacity of the change event channel",
    )
    initial_scan: bool = Field(
        default=True,
        description="Run a full scan before watching",
    )


class CodemarksConfig(BaseSettings):
    """
    Main codemarks configuration.

    Can be configured via:
    1. ~/.codemarks/config.yaml
    2. Environment variables with CODEMARKS_ prefix
    3. Command-line overrides
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEMARKS_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    version: str = Field(default="1", description="Configuration version")
    annotation_pattern: str = Field(
        default=DEFAULT_ANNOTATION_PATTERN,
        description="Regular expression with 'kind' and 'message' captures",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Logging level when --verbose is not given",
    )
    scan: ScanConfig = Field(default_factory=ScanConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)

    @field_validator("annotation_pattern")
    @classmethod
    def validate_annotation_pattern(cls, v: str) -> str:
        """Reject patterns that do not compile."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression: {e}") from e
        return v


def load_config(ephemeral: bool = False) -> CodemarksConfig:
    """
    Load the codemarks configuration.

    Args:
        ephemeral: Ignore the configuration document entirely.

    Returns:
        The configuration; defaults when the document does not exist.

    Raises:
        ConfigurationError: If the document cannot be read or is invalid.
    """
    if ephemeral:
        return CodemarksConfig()

    config_path = get_config_path()
    if not config_path.exists():
        return CodemarksConfig()

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration {config_path} must be a mapping")

    try:
        config = CodemarksConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug("Loaded configuration", path=str(config_path))
    return config


def save_config(config: CodemarksConfig) -> None:
    """
    Save the codemarks configuration.

    Raises:
        ConfigurationError: If writing fails.
    """
    config_path = get_config_path()
    try:
        atomic_write_text(
            config_path,
            yaml.dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=False),
        )
    except OSError as e:
        raise ConfigurationError(f"Failed to save configuration {config_path}: {e}") from e
    logger.debug("Saved configuration", path=str(config_path))
