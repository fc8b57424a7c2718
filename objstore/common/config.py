from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

SUPPORTED_PROVIDERS: tuple[str, ...] = ("aws", "gcp")
SUPPORTED_RETRY_ALGORITHMS: tuple[str, ...] = ("linear", "exponential", "fibonacci")


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


@dataclass
class Settings:
    STORAGE_PROVIDER: str = "aws"
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "auto"
    GCS_PROJECT: str | None = None
    GCS_CREDENTIALS_FILE: str | None = None
    GCS_ENDPOINT_URL: str | None = None
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_ALGORITHM: str = "fibonacci"
    RETRY_MIN_DELAY_MS: int = 50
    RETRY_MAX_DELAY_MS: int = 2500
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    def __post_init__(self) -> None:
        self.STORAGE_PROVIDER = self.STORAGE_PROVIDER.strip().lower()
        if self.STORAGE_PROVIDER not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"STORAGE_PROVIDER must be one of {', '.join(SUPPORTED_PROVIDERS)}, "
                f"got '{self.STORAGE_PROVIDER}'."
            )
        self.RETRY_ALGORITHM = self.RETRY_ALGORITHM.strip().lower()
        if self.RETRY_ALGORITHM not in SUPPORTED_RETRY_ALGORITHMS:
            raise ValueError(
                f"RETRY_ALGORITHM must be one of {', '.join(SUPPORTED_RETRY_ALGORITHMS)}."
            )
        if self.RETRY_MAX_ATTEMPTS < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1.")
        if not 0 <= self.RETRY_MIN_DELAY_MS <= self.RETRY_MAX_DELAY_MS:
            raise ValueError(
                "RETRY_MIN_DELAY_MS must be non-negative and not exceed RETRY_MAX_DELAY_MS."
            )

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            STORAGE_PROVIDER=os.environ.get("STORAGE_PROVIDER", cls.STORAGE_PROVIDER),
            S3_ENDPOINT_URL=os.environ.get("S3_ENDPOINT_URL"),
            S3_REGION=os.environ.get("S3_REGION"),
            S3_ACCESS_KEY_ID=os.environ.get("S3_ACCESS_KEY_ID"),
            S3_SECRET_ACCESS_KEY=os.environ.get("S3_SECRET_ACCESS_KEY"),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            GCS_PROJECT=os.environ.get("GCS_PROJECT"),
            GCS_CREDENTIALS_FILE=os.environ.get("GCS_CREDENTIALS_FILE"),
            GCS_ENDPOINT_URL=os.environ.get("GCS_ENDPOINT_URL"),
            RETRY_MAX_ATTEMPTS=int(
                os.environ.get("RETRY_MAX_ATTEMPTS", cls.RETRY_MAX_ATTEMPTS)
            ),
            RETRY_ALGORITHM=os.environ.get("RETRY_ALGORITHM", cls.RETRY_ALGORITHM),
            RETRY_MIN_DELAY_MS=int(
                os.environ.get("RETRY_MIN_DELAY_MS", cls.RETRY_MIN_DELAY_MS)
            ),
            RETRY_MAX_DELAY_MS=int(
                os.environ.get("RETRY_MAX_DELAY_MS", cls.RETRY_MAX_DELAY_MS)
            ),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL),
            LOG_JSON=_as_bool(os.environ.get("LOG_JSON"), cls.LOG_JSON),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
