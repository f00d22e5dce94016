"""YAML configuration for mailweave.

``get_config()`` keeps the last loaded ``AppConfig`` for the process.
``rethread --watch`` calls ``reload_config_if_changed()`` between cycles so
edits to the file take effect on the next rethread without a restart.

Usage:
    from mailweave.config import get_config, reload_config_if_changed

    config = get_config()
    ...
    if reload_config_if_changed():
        pipeline.update_config(get_config())
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from mailweave.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from mailweave.core.errors import ConfigLoadError, ConfigValidationError
from mailweave.core.logging import get_logger

logger = get_logger(__name__)

CONFIG_PATH_ENV = "MAILWEAVE_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config/config.yaml")

# Pydantic error types that get a plain-language message
_ERROR_TEMPLATES = {
    "missing": "is required",
    "string_type": "must be a string",
    "list_type": "must be a list",
    "bool_type": "must be true or false",
    "bool_parsing": "must be true or false",
    "float_type": "must be a number",
    "float_parsing": "must be a number",
    "greater_than_equal": "is below the minimum ({ctx})",
    "less_than_equal": "is above the maximum ({ctx})",
}


@dataclass
class _LoadedConfig:
    """The active config and the file state it was read from."""

    config: AppConfig
    path: Path
    mtime: float


_loaded: _LoadedConfig | None = None


def config_path() -> Path:
    """Path of the config file: $MAILWEAVE_CONFIG_PATH or config/config.yaml."""
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _describe_errors(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        field = ".".join(str(loc) for loc in err["loc"])
        template = _ERROR_TEMPLATES.get(err["type"])
        if template is None:
            lines.append(f"  - {field}: {err['msg']}")
        else:
            ctx = ", ".join(f"{k}={v}" for k, v in (err.get("ctx") or {}).items())
            lines.append(f"  - {field} {template.format(ctx=ctx)}")
    return "\n".join(lines)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        ) from None
    except OSError as e:
        raise ConfigLoadError(f"Cannot read configuration file {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file, bypassing the cached config.

    Args:
        path: Config file; defaults to ``config_path()``

    Raises:
        ConfigLoadError: If the file is missing, unreadable or not a mapping
        ConfigValidationError: If a field is invalid or the schema is too new
    """
    path = path or config_path()
    data = _read_yaml(path)

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid configuration in {path}:\n{_describe_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{path} uses schema version {config.schema_version}, which is newer than "
            f"this release supports ({CURRENT_SCHEMA_VERSION}). Upgrade mailweave."
        )

    logger.debug(
        "Configuration loaded",
        path=str(path),
        database=config.database.path,
        group_by_subject=config.threading.group_by_subject,
        subject_prefixes=len(config.threading.subject_prefixes),
    )
    return config


def get_config() -> AppConfig:
    """Return the active config, loading it from disk on first use."""
    global _loaded

    if _loaded is None:
        path = config_path()
        config = load_config(path)
        _loaded = _LoadedConfig(config, path, path.stat().st_mtime)
    return _loaded.config


def reload_config_if_changed() -> bool:
    """Reload the config if its file was modified since the last load.

    A file that fails to load or validate is logged and skipped; the
    previous config stays active until the file is edited again.

    Returns:
        True if a new config is now active
    """
    if _loaded is None:
        return False

    try:
        mtime = _loaded.path.stat().st_mtime
    except OSError as e:
        logger.warning("Config file not readable", path=str(_loaded.path), error=str(e))
        return False
    if mtime <= _loaded.mtime:
        return False

    _loaded.mtime = mtime
    try:
        _loaded.config = load_config(_loaded.path)
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.warning("Config reload failed, keeping previous config", error=str(e))
        return False

    logger.info("Config reloaded", path=str(_loaded.path))
    return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file for the validate-config command.

    Returns:
        (is_valid, message); the message summarizes the settings or the error
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    def on_off(flag: bool) -> str:
        return "on" if flag else "off"

    return True, (
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.database.path}\n"
        f"  - subject grouping: {on_off(config.threading.group_by_subject)}\n"
        f"  - {len(config.threading.subject_prefixes)} subject prefixes\n"
        f"  - overrides: {on_off(config.manual.apply_overrides)}, "
        f"groups: {on_off(config.manual.apply_groups)}"
    )


def reset_config() -> None:
    """Forget the active config. Used by tests."""
    global _loaded
    _loaded = None
