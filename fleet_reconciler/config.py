"""
Runtime configuration, read from the environment.

A `.env` file in the working directory is loaded first (python-dotenv), then
every `FLEET_*` variable is read into a typed Settings model. A value that
does not parse falls back to its default; configuration never stops the
engine from starting.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_ENV_PREFIX = "FLEET_"


class Settings(BaseModel):
    """Engine and host settings."""

    log_level: str = "INFO"
    default_confidence: int = Field(default=50, ge=0, le=100)
    expires_soon_days: int = Field(default=30, ge=0)
    state_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Build settings from `FLEET_*` variables (loads `.env` when reading os.environ)."""
        if environ is None:
            load_dotenv()
            environ = dict(os.environ)

        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None and raw.strip():
                values[name] = raw.strip()

        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            bad = sorted({str(err["loc"][0]) for err in exc.errors()})
            logger.warning("Ignoring invalid settings %s; using defaults", bad)
            return cls.model_validate({k: v for k, v in values.items() if k not in bad})
