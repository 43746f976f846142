"""structlog setup for the fact engine: console or JSON output, secrets redacted."""

import logging
import re
import sys
from collections.abc import Iterable

import structlog

REDACTED = "REDACTED"

_SENSITIVE_KEYS = {"token", "authorization", "api_key", "password", "secret"}

_TEXT_PATTERNS = [
    (re.compile(r"(Bearer\s+)[a-zA-Z0-9_.~+/=-]{8,}"), rf"\1{REDACTED}"),
    (re.compile(r"((?:token|api[_-]?key|secret)['\"]?\s*[:=]\s*['\"]?)[^\s'\",}]{6,}", re.I), rf"\1{REDACTED}"),
    (re.compile(r"(https?://[^:/\s]+:)[^@\s]+@"), rf"\1{REDACTED}@"),
]

# Third-party loggers that are chatty at INFO and below
_QUIET_LOGGERS = {"apscheduler": logging.INFO, "httpx": logging.WARNING, "httpcore": logging.WARNING}


class SecretRedactor:
    """structlog processor masking credentials in event values.

    Besides key names and textual patterns, any literal secret handed in
    (the configured catalog token) is masked wherever it appears.
    """

    def __init__(self, secrets: Iterable[str] = ()):
        self.secrets = [s for s in secrets if s and len(s) >= 4]

    def _scrub(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        for pattern, replacement in _TEXT_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def __call__(self, _, __, event_dict: dict) -> dict:
        for key, value in event_dict.items():
            if key.lower() in _SENSITIVE_KEYS and value:
                event_dict[key] = REDACTED
            elif isinstance(value, str):
                event_dict[key] = self._scrub(value)
        return event_dict


_redact_sensitive = SecretRedactor()


def _shared_processors(redactor: SecretRedactor) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redactor,
    ]


def setup_logging(
    json_mode: bool = False, level: str = "INFO", secrets: Iterable[str] = ()
) -> None:
    """Configure structlog and route stdlib loggers through the same renderer.

    Args:
        json_mode: JSON lines (daemon) instead of the console renderer.
        level: Root log level name; unknown names fall back to INFO.
        secrets: Literal credentials to mask in every log line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    redactor = SecretRedactor(secrets) if secrets else _redact_sensitive
    renderer = structlog.processors.JSONRenderer() if json_mode else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *_shared_processors(redactor),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # APScheduler and httpx log through stdlib
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redactor,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)
    for name, floor in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(log_level, floor))
