"""Label-prefixed, line-oriented logging on top of structlog.

Every component logs through ``get_logger(label)``. Each rendered line is
prefixed with ``[label] ``; info and debug lines go to stdout, warnings and
errors to stderr.
"""

import logging
import sys
from typing import Any, MutableMapping

import structlog
from rich.logging import RichHandler

DEFAULT_LABEL = "gridrun"


def prefix_lines(message: str, label: str) -> str:
    """Trim ``message`` and prefix every line with ``[label] ``."""
    lines = message.strip().splitlines() or [""]
    return "".join(f"[{label}] {line}\n" for line in lines)


def render_labelled(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> str:
    label = event_dict.pop("label", DEFAULT_LABEL)
    message = str(event_dict.pop("event", ""))
    exception = event_dict.pop("exception", None)
    stack = event_dict.pop("stack", None)
    event_dict.pop("level", None)
    event_dict.pop("timestamp", None)

    if event_dict:
        extras = " ".join(f"{key}={value}" for key, value in event_dict.items())
        message = f"{message} ({extras})" if message.strip() else extras
    for block in (stack, exception):
        if block:
            message = f"{message}\n{block}"
    return prefix_lines(message, label)


class LabelledStreamLogger:
    """Writes pre-rendered lines to stdout or stderr depending on level."""

    def _stdout(self, message: str) -> None:
        sys.stdout.write(message)
        sys.stdout.flush()

    def _stderr(self, message: str) -> None:
        sys.stderr.write(message)
        sys.stderr.flush()

    msg = debug = info = _stdout
    warning = warn = error = critical = exception = fatal = _stderr


class LabelledStreamLoggerFactory:
    def __call__(self, *args: Any) -> LabelledStreamLogger:
        return LabelledStreamLogger()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for gridrun and route library logging through rich."""
    level_value = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=level_value,
        handlers=[RichHandler()],
    )

    structlog.configure(
        processors=[
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            render_labelled,
        ],
        context_class=dict,
        logger_factory=LabelledStreamLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        cache_logger_on_first_use=False,
    )


def get_logger(label: str) -> Any:
    """Return a logger whose lines are prefixed with ``[label]``."""
    return structlog.get_logger(label=label)
