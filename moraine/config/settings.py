"""
Engine settings.

Settings come from (highest precedence first) explicit keyword arguments,
``MORAINE_*`` environment variables, a YAML settings file, then defaults.
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from moraine.core.errors import ConfigError


class MoraineSettings(BaseSettings):
    """
    Moraine Engine Configuration.

    Example:
        settings = MoraineSettings(concurrency=8, operation_timeout=300)

        # or, from moraine.yaml with MORAINE_CONCURRENCY=16 in the environment
        settings = MoraineSettings.from_file("moraine.yaml")
    """

    model_config = SettingsConfigDict(env_prefix="MORAINE_", extra="ignore")

    concurrency: int = Field(default=4, ge=1, description="Maximum operations in flight")
    operation_timeout: float | None = Field(
        default=None, gt=0, description="Per-operation provider timeout in seconds"
    )
    state_dir: Path = Field(
        default=Path(".moraine/state"), description="Directory of the file state store"
    )
    resume_from_failure: bool = Field(
        default=False, description="Resume halted pipelines from the failed stage"
    )
    rollback_on_failure: bool = Field(
        default=False, description="Delete resources created by a failed apply"
    )
    archive_dir: Path | None = Field(
        default=None, description="Directory to archive finished pipeline runs"
    )
    log_level: str = Field(default="INFO", description="Log level")
    log_format: Literal["console", "json"] = Field(
        default="console", description="Log renderer"
    )

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> "MoraineSettings":
        """
        Load settings from a YAML file.

        Environment variables still take precedence over values from the
        file; keyword overrides take precedence over both.

        Raises:
            ConfigError: If the file cannot be parsed or holds invalid values
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read settings file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {path} must contain a mapping")

        values = {key: value for key, value in data.items() if key in cls.model_fields}
        values.update({key: value for key, value in overrides.items() if value is not None})
        try:
            # Only values actually set from the environment override the file.
            env_values = cls().model_dump(exclude_unset=True)
            for key, value in env_values.items():
                if key not in overrides or overrides[key] is None:
                    values[key] = value
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid settings in {path}: {exc}") from exc
