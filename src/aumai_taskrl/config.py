"""Engine settings and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .models import ControllerSettings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_ENV_PREFIX = "TASKRL_"


class EngineSettings(BaseModel):
    """Process-wide settings.

    Attributes:
        data_dir: Root directory of the file storage backend.
        log_level: Level name for the package logger.
        controller: Default controller policy.
    """

    data_dir: Path = Field(default=Path("data"))
    log_level: str = Field(default="INFO")
    controller: ControllerSettings = Field(default_factory=ControllerSettings)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineSettings:
        """Load from ``TASKRL_*`` environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        controller: dict[str, str] = {}
        for field in ("max_retries", "retry_delay", "timeout"):
            value = env.get(f"{_ENV_PREFIX}{field.upper()}")
            if value is not None:
                controller[field] = value
        values: dict[str, object] = {"controller": ControllerSettings.model_validate(controller)}
        if f"{_ENV_PREFIX}DATA_DIR" in env:
            values["data_dir"] = env[f"{_ENV_PREFIX}DATA_DIR"]
        if f"{_ENV_PREFIX}LOG_LEVEL" in env:
            values["log_level"] = env[f"{_ENV_PREFIX}LOG_LEVEL"].upper()
        return cls.model_validate(values)


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach one stream handler to the package logger and set its level.

    Calling it again only updates the level.
    """
    logger = logging.getLogger("aumai_taskrl")
    logger.setLevel(level)
    if not any(getattr(h, "_taskrl", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._taskrl = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
