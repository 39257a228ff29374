"""
Configuration loader — reads kegworks.yml into a Settings model.

Precedence, highest first:
    CLI flags  >  KEG_* environment variables  >  kegworks.yml  >  defaults

A missing settings file is not an error: every field has a default
rooted at ``~/.local/kegworks``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from kegworks.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = "kegworks.yml"
DEFAULT_CONFIG_PATH = Path("~/.config/kegworks") / CONFIG_FILE
DEFAULT_PREFIX = "~/.local/kegworks"

# Environment variable → settings field
_ENV_OVERRIDES = {
    "KEG_PREFIX": "prefix",
    "KEG_ARCH": "architecture",
    "KEG_STRICT": "strict_checksums",
    "KEG_STATE_DIR": "state_dir",
}


class Settings(BaseModel):
    """Runtime settings for every kegworks operation."""

    prefix: Path = Path(DEFAULT_PREFIX)
    formula_dirs: list[Path] = Field(default_factory=list)
    state_dir: Path | None = None
    staging_dir: Path | None = None

    architecture: str | None = None
    strict_checksums: bool = False

    # Fetch
    fetch_timeout: float = 60.0
    fetch_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    # Supervisor
    stop_grace_period: float = Field(default=10.0, ge=0)
    restart_base_delay: float = Field(default=1.0, ge=0)
    restart_max_delay: float = Field(default=60.0, ge=0)
    restart_stable_after: float = Field(default=10.0, ge=0)
    poll_interval: float = Field(default=0.5, gt=0)

    @model_validator(mode="after")
    def _derive_paths(self) -> Settings:
        self.prefix = self.prefix.expanduser()
        if self.state_dir is None:
            self.state_dir = self.prefix / "var" / "kegworks"
        if self.staging_dir is None:
            self.staging_dir = self.prefix / "var" / "cache" / "kegworks" / "staging"
        if not self.formula_dirs:
            self.formula_dirs = [self.prefix / "Formula"]
        self.state_dir = self.state_dir.expanduser()
        self.staging_dir = self.staging_dir.expanduser()
        self.formula_dirs = [p.expanduser() for p in self.formula_dirs]
        return self

    @property
    def bin_dir(self) -> Path:
        return self.prefix / "bin"

    @property
    def var_dir(self) -> Path:
        return self.prefix / "var"

    def placeholders(self) -> dict[str, str]:
        """Values for ``{prefix}``, ``{bin}`` and ``{var}`` in formula fields."""
        return {
            "prefix": str(self.prefix),
            "bin": str(self.bin_dir),
            "var": str(self.var_dir),
        }


def find_config_file() -> Path | None:
    """Locate the settings file: ``KEG_CONFIG`` first, then the user config dir."""
    explicit = os.environ.get("KEG_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    candidate = DEFAULT_CONFIG_PATH.expanduser()
    return candidate if candidate.is_file() else None


def load_settings(
    path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load and validate settings.

    Args:
        path: Explicit settings file. If None, searches the default locations.
        overrides: Values from CLI flags; ``None`` entries are ignored.

    Returns:
        Validated Settings model.

    Raises:
        ConfigError: If the file is unreadable or any value is invalid.
    """
    if path is None:
        path = find_config_file()

    data: dict[str, Any] = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        logger.debug("Loading settings from %s", path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        try:
            loaded = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(
                f"Expected a YAML mapping in {path}, got {type(loaded).__name__}"
            )
        data.update(loaded)

    for env_var, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[field_name] = value

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e

    logger.debug(
        "Settings: prefix=%s state_dir=%s strict=%s",
        settings.prefix, settings.state_dir, settings.strict_checksums,
    )
    return settings
