import os

import pytest

from objstore.common import config
from objstore.common.config import Settings, get_settings


@pytest.fixture
def environ(monkeypatch, tmp_path):
    """Isolate settings from the process environment and any local .env file."""
    env: dict[str, str] = {}
    monkeypatch.setattr(os, "environ", env)
    monkeypatch.setattr(config, "ENV_FILE", tmp_path / ".env")
    return env


def test_defaults(environ):
    settings = Settings.from_environment()

    assert settings.STORAGE_PROVIDER == "aws"
    assert settings.S3_USE_SSL is True
    assert settings.RETRY_MAX_ATTEMPTS == 3
    assert settings.RETRY_ALGORITHM == "fibonacci"
    assert settings.LOG_JSON is True


def test_reads_environment(environ):
    environ.update(
        {
            "STORAGE_PROVIDER": " GCP ",
            "GCS_PROJECT": "proj",
            "S3_USE_SSL": "false",
            "RETRY_MAX_ATTEMPTS": "7",
            "RETRY_ALGORITHM": "Linear",
            "RETRY_MIN_DELAY_MS": "10",
            "RETRY_MAX_DELAY_MS": "100",
            "LOG_JSON": "no",
        }
    )

    settings = Settings.from_environment()

    assert settings.STORAGE_PROVIDER == "gcp"
    assert settings.GCS_PROJECT == "proj"
    assert settings.S3_USE_SSL is False
    assert settings.RETRY_MAX_ATTEMPTS == 7
    assert settings.RETRY_ALGORITHM == "linear"
    assert settings.RETRY_MIN_DELAY_MS == 10
    assert settings.LOG_JSON is False


def test_env_file_does_not_override_environment(environ):
    config.ENV_FILE.write_text(
        "# local overrides\nS3_REGION=eu-west-1\nS3_ENDPOINT_URL='http://minio:9000'\nnot a setting\n",
        encoding="utf-8",
    )
    environ["S3_REGION"] = "us-east-1"

    settings = Settings.from_environment()

    assert settings.S3_REGION == "us-east-1"
    assert settings.S3_ENDPOINT_URL == "http://minio:9000"


@pytest.mark.parametrize(
    "overrides",
    [
        {"STORAGE_PROVIDER": "azure"},
        {"RETRY_ALGORITHM": "random"},
        {"RETRY_MAX_ATTEMPTS": 0},
        {"RETRY_MIN_DELAY_MS": -1},
        {"RETRY_MIN_DELAY_MS": 100, "RETRY_MAX_DELAY_MS": 10},
    ],
)
def test_invalid_settings(overrides):
    with pytest.raises(ValueError):
        Settings(**overrides)


def test_get_settings_is_cached(environ):
    assert get_settings() is get_settings()
