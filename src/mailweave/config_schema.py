"""Pydantic configuration schema for mailweave.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

The threading engine only ever sees ``ThreadingConfig``; the other sections
configure the store, the rethread pipeline and logging.

Usage:
    from mailweave.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Reply/forward markers stripped before comparing subjects of stray roots.
# English plus the common localized variants mail clients emit.
DEFAULT_SUBJECT_PREFIXES = [
    "re",
    "fw",
    "fwd",
    "aw",
    "wg",
    "sv",
    "vs",
    "antw",
    "rif",
    "res",
    "enc",
    "tr",
]


class DatabaseConfig(BaseModel):
    """SQLite store configuration."""

    path: str = Field(
        default="data/mailweave.db",
        description="Path to the SQLite database holding messages and manual state",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ThreadingConfig(BaseModel):
    """Threading engine policy.

    Attributes:
        group_by_subject: Group stray root messages that share a subject
        subject_prefixes: Reply/forward markers stripped from subjects
        min_snippet_similarity: Snippet overlap required to join a subject group
        regex_timeout_seconds: Timeout for subject regex matching
    """

    group_by_subject: bool = Field(
        default=True,
        description="Merge unlinked single messages whose normalized subjects match",
    )
    subject_prefixes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SUBJECT_PREFIXES),
        description="Reply/forward markers (without the colon), matched case-insensitively",
    )
    min_snippet_similarity: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Token overlap between snippets required for subject grouping (0 disables)",
    )
    regex_timeout_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=10.0,
        description="Timeout for subject normalization regex matching",
    )

    @field_validator("subject_prefixes")
    @classmethod
    def validate_subject_prefixes(cls, v: list[str]) -> list[str]:
        """Normalize prefixes and reject blank or colon-terminated entries."""
        cleaned = []
        for prefix in v:
            prefix = prefix.strip().lower()
            if not prefix:
                raise ValueError("Subject prefixes cannot be empty")
            if prefix.endswith(":"):
                raise ValueError(f"Subject prefix '{prefix}' must not include the colon")
            if prefix not in cleaned:
                cleaned.append(prefix)
        return cleaned


class ManualConfig(BaseModel):
    """How persisted manual overrides and groups are applied each cycle."""

    apply_overrides: bool = Field(
        default=True,
        description="Apply per-message manual overrides to the base result",
    )
    apply_groups: bool = Field(
        default=True,
        description="Apply manual thread groups after overrides",
    )
    migrate_legacy_overrides: bool = Field(
        default=False,
        description="Convert stored overrides into manual groups before rethreading",
    )
    prune_invalid_overrides: bool = Field(
        default=False,
        description="Delete overrides whose message or target thread no longer exists",
    )


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )
    json_output: bool = Field(
        default=True,
        description="Emit JSON logs (disable for human-readable console output)",
    )


class AppConfig(BaseModel):
    """Root configuration schema for mailweave.

    This model validates the entire config.yaml structure. On startup and
    hot-reload, the YAML is parsed and validated against this schema.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    threading: ThreadingConfig = Field(default_factory=ThreadingConfig)
    manual: ManualConfig = Field(default_factory=ManualConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
