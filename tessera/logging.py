from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("tessera_request_id", default=None)

# Values under these keys are credentials and are never written out
_CREDENTIAL_KEY_PARTS = ("password", "secret", "token", "authorization", "cookie")
_EMAIL_KEY_PART = "email"
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    """Request id bound to the current context, if any."""
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    cid = correlation_id or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _bind_request_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = _request_id.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(value: str) -> str:
    """``alice@example.com`` -> ``al***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(part in lowered for part in _CREDENTIAL_KEY_PARTS):
            event_dict[key] = "[redacted]"
        elif _EMAIL_KEY_PART in lowered:
            event_dict[key] = mask_email(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; a coloured console renderer when ``dev_mode`` is
    set or JSON output is disabled. Credential-bearing keys are scrubbed
    before rendering in both modes.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Internal detail that must not reach an API client
_CLIENT_UNSAFE: Dict[str, re.Pattern] = {
    "argon2_hash": re.compile(r"\$argon2(?:id|i|d)\$\S+"),
    "jwt": re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]*"),
    "bearer": re.compile(r"(?i)\bbearer\s+\S+"),
    "dsn": re.compile(r"(?i)\bpostgres(?:ql)?://\S+"),
    "sql": re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,80}"),
    "constraint": re.compile(r'(?i)constraint\s+"[^"]+"'),
    "path": re.compile(r"(?:/[\w.-]+){2,}"),
}

_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Make an internal error message safe to echo to an API client.

    Password hashes, JWTs, bearer values, DSNs, SQL fragments, constraint
    names and filesystem paths are replaced; the result is capped in length.
    """
    if not isinstance(error, str) or not error.strip():
        return "An error occurred"
    cleaned = error
    for pattern in _CLIENT_UNSAFE.values():
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_CLIENT_MESSAGE:
        cleaned = cleaned[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return cleaned
