import json
import logging
from logging.config import dictConfig
from typing import Sequence


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "()": JsonFormatter,
                },
                "plain": {
                    "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json" if json_output else "plain",
                },
            },
            "loggers": {
                "objstore": {
                    "handlers": ["console"],
                    "level": level.upper(),
                    "propagate": False,
                },
                # Both SDKs are very chatty at debug level
                "botocore": {"level": "WARNING"},
                "google": {"level": "WARNING"},
            },
        }
    )


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def user_tag(value: object) -> str:
    """Surround user data with ``<ud>`` tags so it can be redacted from logs later."""
    return f"<ud>{value}</ud>"


def _flag_matches(flag: str, flags: Sequence[str]) -> bool:
    return any(flag.startswith(prefix) for prefix in flags)


def user_tag_arguments(args: Sequence[str], flags_to_tag: Sequence[str]) -> list[str]:
    """Return a copy of ``args`` with the values of the given flags wrapped in user tags."""
    tagged = list(args)
    i = 0
    while i < len(tagged):
        if _flag_matches(tagged[i], flags_to_tag) and i + 1 < len(tagged):
            i += 1
            tagged[i] = user_tag(tagged[i])
        i += 1
    return tagged


def mask_arguments(args: Sequence[str], flags_to_mask: Sequence[str]) -> list[str]:
    """Return a copy of ``args`` with the values of the given flags replaced by a fixed mask."""
    masked = list(args)
    i = 0
    while i < len(masked):
        # Only mask when the flag is followed by a value rather than another flag
        if (
            _flag_matches(masked[i], flags_to_mask)
            and i + 1 < len(masked)
            and not masked[i + 1].startswith("-")
        ):
            i += 1
            masked[i] = "*****"
        i += 1
    return masked


def mask_and_user_tag_arguments(
    args: Sequence[str], flags_to_tag: Sequence[str], flags_to_mask: Sequence[str]
) -> str:
    """Tag then mask ``args``, joined with spaces for logging."""
    return " ".join(mask_arguments(user_tag_arguments(args, flags_to_tag), flags_to_mask)).strip()
