"""Process-wide upload configuration, read once at startup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from src.security.signatures import DEFAULT_MAX_BYTES, ContentClass, default_content_classes

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = "./var/uploads"
DEFAULT_STAGING_TIMEOUT_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


def _load_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid value '%s' for %s. Falling back to %s.", raw, name, default)
        return default


@dataclass(frozen=True, slots=True)
class UploadSettings:
    """Immutable upload configuration passed explicitly into the app."""

    storage_path: Path = Path(DEFAULT_STORAGE_PATH)
    max_bytes: int = DEFAULT_MAX_BYTES
    staging_timeout_seconds: int = DEFAULT_STAGING_TIMEOUT_SECONDS
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    content_classes: Mapping[str, ContentClass] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        classes = dict(self.content_classes) or default_content_classes(self.max_bytes)
        object.__setattr__(self, "content_classes", MappingProxyType(classes))

    @classmethod
    def from_env(cls) -> "UploadSettings":
        return cls(
            storage_path=Path(os.getenv("UPLOAD_STORAGE_PATH", DEFAULT_STORAGE_PATH)),
            max_bytes=_load_int_env("UPLOAD_MAX_BYTES", DEFAULT_MAX_BYTES),
            staging_timeout_seconds=_load_int_env(
                "UPLOAD_STAGING_TIMEOUT_SECONDS", DEFAULT_STAGING_TIMEOUT_SECONDS
            ),
            sweep_interval_seconds=_load_int_env(
                "UPLOAD_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
            ),
        )
