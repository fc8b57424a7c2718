"""Construct storage clients from configuration."""

from __future__ import annotations

import threading

from objstore.common.config import Settings, get_settings
from objstore.common.logging import setup_logging
from objstore.common.retry import Algorithm, Retryer, RetryerOptions, log_retry
from objstore.storage.client import StorageClient
from objstore.storage.gcs_client import GCSStorageClient
from objstore.storage.s3_client import S3StorageClient


def configure_logging(settings: Settings | None = None) -> None:
    """Configure the ``objstore`` loggers from ``LOG_LEVEL`` and ``LOG_JSON``.

    Applications embedding the library call this once at start-up; the library
    itself never configures logging.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)


def build_retryer(settings: Settings) -> Retryer:
    """Build the retryer shared by every request issued by a client."""
    return Retryer(
        RetryerOptions(
            max_retries=settings.RETRY_MAX_ATTEMPTS,
            algorithm=Algorithm(settings.RETRY_ALGORITHM),
            min_delay=settings.RETRY_MIN_DELAY_MS / 1000,
            max_delay=settings.RETRY_MAX_DELAY_MS / 1000,
            log=log_retry,
        )
    )


def build_client(
    settings: Settings | None = None, *, cancel: threading.Event | None = None
) -> StorageClient:
    """Build the storage client for the configured provider."""
    settings = settings or get_settings()
    retryer = build_retryer(settings)

    if settings.STORAGE_PROVIDER == "gcp":
        return GCSStorageClient.from_settings(settings, retryer=retryer, cancel=cancel)

    return S3StorageClient.from_settings(settings, retryer=retryer, cancel=cancel)
