from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

ADDRESSING_STYLES: tuple[str, ...] = ("auto", "path", "virtual")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass
class Settings:
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "auto"
    S3_MAX_ATTEMPTS: int = 4
    TRANSFER_CONCURRENT_SERVICE_REQUESTS: int = 10
    TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD: int = 16 * 1024 * 1024
    TRANSFER_MULTIPART_FINALIZE_TIMEOUT: float = 5.0
    TRANSFER_PROGRESS_UPDATE_INTERVAL: int = 100 * 1024
    LOG_LEVEL: str = "INFO"

    def __post_init__(self) -> None:
        style = (self.S3_ADDRESSING_STYLE or "auto").strip().lower()
        if style not in ADDRESSING_STYLES:
            raise ValueError(
                f"S3_ADDRESSING_STYLE must be one of {', '.join(ADDRESSING_STYLES)}."
            )
        self.S3_ADDRESSING_STYLE = style
        if self.S3_MAX_ATTEMPTS < 0:
            raise ValueError("S3_MAX_ATTEMPTS must not be negative.")
        if self.TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD < 0:
            raise ValueError("TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD must not be negative.")
        if self.TRANSFER_MULTIPART_FINALIZE_TIMEOUT < 0:
            raise ValueError("TRANSFER_MULTIPART_FINALIZE_TIMEOUT must not be negative.")
        level = self.LOG_LEVEL.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}.")
        self.LOG_LEVEL = level

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            S3_ENDPOINT_URL=os.environ.get("S3_ENDPOINT_URL") or None,
            S3_REGION=os.environ.get("S3_REGION", cls.S3_REGION),
            S3_ACCESS_KEY_ID=os.environ.get("S3_ACCESS_KEY_ID"),
            S3_SECRET_ACCESS_KEY=os.environ.get("S3_SECRET_ACCESS_KEY"),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            S3_MAX_ATTEMPTS=_as_int(
                os.environ.get("S3_MAX_ATTEMPTS"), cls.S3_MAX_ATTEMPTS
            ),
            TRANSFER_CONCURRENT_SERVICE_REQUESTS=_as_int(
                os.environ.get("TRANSFER_CONCURRENT_SERVICE_REQUESTS"),
                cls.TRANSFER_CONCURRENT_SERVICE_REQUESTS,
            ),
            TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD=_as_int(
                os.environ.get("TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD"),
                cls.TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD,
            ),
            TRANSFER_MULTIPART_FINALIZE_TIMEOUT=_as_float(
                os.environ.get("TRANSFER_MULTIPART_FINALIZE_TIMEOUT"),
                cls.TRANSFER_MULTIPART_FINALIZE_TIMEOUT,
            ),
            TRANSFER_PROGRESS_UPDATE_INTERVAL=_as_int(
                os.environ.get("TRANSFER_PROGRESS_UPDATE_INTERVAL"),
                cls.TRANSFER_PROGRESS_UPDATE_INTERVAL,
            ),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
