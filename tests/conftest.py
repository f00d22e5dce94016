"""Pytest fixtures and configuration for mailweave tests.

Provides common fixtures for configuration, database paths and message
records.
"""

import os
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from mailweave.config import reset_config
from mailweave.config_schema import AppConfig
from mailweave.engine.models import MessageRecord

BASE_DATE = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

MessageFactory = Callable[..., MessageRecord]


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "database": {"path": str(data_dir / "mailweave.db")},
        "threading": {"group_by_subject": True},
    }


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1

database:
  path: "{data_dir / 'mailweave.db'}"

threading:
  group_by_subject: true
  subject_prefixes: [re, fwd, aw]

manual:
  apply_overrides: true
  apply_groups: true

logging:
  level: DEBUG
  json_output: false
"""


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILWEAVE_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILWEAVE_CONFIG_PATH")
    os.environ["MAILWEAVE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILWEAVE_CONFIG_PATH"]
    else:
        os.environ["MAILWEAVE_CONFIG_PATH"] = old_value


def build_message(
    name: str,
    minutes: int = 0,
    *,
    references: tuple[str, ...] = (),
    in_reply_to: str | None = None,
    subject: str | None = None,
    is_unread: bool = False,
    message_id: str | None = None,
    record_id: str | None = None,
    snippet: str = "",
) -> MessageRecord:
    """Build a message whose Message-ID is ``<name@example.com>``.

    ``minutes`` offsets the date from a fixed base date.
    """
    return MessageRecord(
        id=record_id or f"rec-{name}",
        message_id=f"<{name}@example.com>" if message_id is None else message_id,
        date=BASE_DATE + timedelta(minutes=minutes),
        subject=f"Subject {name}" if subject is None else subject,
        is_unread=is_unread,
        in_reply_to=in_reply_to,
        references=references,
        snippet=snippet,
    )


def key(name: str) -> str:
    """Thread key of a message built by ``build_message``."""
    return f"{name}@example.com"


def ref(name: str) -> str:
    """Raw header reference to a message built by ``build_message``."""
    return f"<{name}@example.com>"


@pytest.fixture
def make_message() -> MessageFactory:
    """Factory for message records with predictable ids and dates."""
    return build_message
