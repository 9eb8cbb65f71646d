from __future__ import annotations

import json
import logging
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "landfall"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "change_request_resolved",
        "checks_classified",
        "merge_plan_ready",
        "change_request_merged",
        "change_request_merge_failed",
        "signal_emitted",
        "cleanup_completed",
        "pull_conflict_resolved_prefer_remote",
        "workspace_selected",
        "run_check_finished",
        "run_approved",
        "poll_finished",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(verbose: bool | str | None) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        stream_handler.addFilter(_LowVerbosityFilter())
    logger.addHandler(stream_handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    elif isinstance(value, tuple | list):
        normalized = ",".join(str(item) for item in value) or "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS


class Console:
    """Human-readable progress lines on stdout, interleaved with signal lines.

    Error lines go to ``error_stream`` (stderr by default) so readers of the
    signal lines on stdout only see progress.
    """

    _MARKERS: Final[dict[str, tuple[str, str]]] = {
        "info": ("\033[0;32m", "✓"),
        "warn": ("\033[0;33m", "⚠"),
        "error": ("\033[0;31m", "✗"),
        "status": ("\033[0;34m", "⏳"),
    }

    def __init__(
        self,
        stream: TextIO | None = None,
        *,
        error_stream: TextIO | None = None,
        color: bool | None = None,
    ) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._error_stream = error_stream if error_stream is not None else sys.stderr
        self._color = _wants_color(self._stream) if color is None else color
        self._error_color = _wants_color(self._error_stream) if color is None else color

    @property
    def stream(self) -> TextIO:
        return self._stream

    def info(self, message: str) -> None:
        self._marked("info", message)

    def warn(self, message: str) -> None:
        self._marked("warn", message)

    def error(self, message: str) -> None:
        color, marker = self._MARKERS["error"]
        prefix = f"{color}{marker}\033[0m" if self._error_color else marker
        self._error_stream.write(f"{prefix} {message}\n")
        self._error_stream.flush()

    def status(self, message: str) -> None:
        self._marked("status", message)

    def line(self, text: str = "") -> None:
        self._stream.write(f"{text}\n")
        self._stream.flush()

    def _marked(self, kind: str, message: str) -> None:
        color, marker = self._MARKERS[kind]
        if self._color:
            self.line(f"{color}{marker}\033[0m {message}")
        else:
            self.line(f"{marker} {message}")


def _wants_color(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty()) if callable(isatty) else False
