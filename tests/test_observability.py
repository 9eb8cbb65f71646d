from __future__ import annotations

import io
import logging
import sys
from typing import Iterator

import pytest

from landfall import observability
from landfall.observability import Console, configure_logging, log_event


@pytest.fixture(autouse=True)
def restore_landfall_logger_state() -> Iterator[None]:
    logger = logging.getLogger("landfall")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("landfall")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_writes_to_stderr() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("landfall")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt

    configure_logging(verbose="high")
    assert len(logger.handlers) == 1


def test_low_verbosity_keeps_milestones_and_warnings(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("landfall.tests")

    log_event(logger, "github_read", pr_number=1)
    log_event(logger, "change_request_merged", pr_number=1)
    logger.warning("event=pull_aborted default_branch=main")

    stderr = capsys.readouterr().err
    assert "github_read" not in stderr
    assert "event=change_request_merged pr_number=1" in stderr
    assert "event=pull_aborted" in stderr


def test_unsupported_verbose_mode_raises() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="loud")


def test_log_event_formats_sorted_fields(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("landfall.tests")

    log_event(
        logger,
        "signal_emitted",
        z=None,
        flag=True,
        reason="two words",
        keys=["run_id", "workspace"],
        count=3,
    )

    stderr = capsys.readouterr().err
    assert (
        'event=signal_emitted count=3 flag=true keys=run_id,workspace reason="two words" z=null'
        in stderr
    )


def test_normalize_field_value_truncates_and_quotes() -> None:
    long_value = "a" * 200
    normalized = observability._normalize_field_value(long_value)
    assert normalized.endswith("...")
    assert len(normalized) == 123

    assert observability._normalize_field_value("") == "<empty>"
    assert observability._normalize_field_value("k=v") == '"k=v"'
    assert observability._normalize_field_value(()) == "<empty>"
    assert observability._normalize_field_value(object()) == "<object>"


def test_extract_event_name() -> None:
    assert observability._extract_event_name("event=poll_finished ticks=2") == "poll_finished"
    assert observability._extract_event_name("plain message") is None
    assert observability._extract_event_name("event= x=1") is None


def test_console_markers_without_color() -> None:
    stream = io.StringIO()
    errors = io.StringIO()
    console = Console(stream, error_stream=errors, color=False)

    console.info("done")
    console.warn("careful")
    console.error("broken")
    console.status("waiting")
    console.line("plain")
    console.line()

    assert stream.getvalue() == "✓ done\n⚠ careful\n⏳ waiting\nplain\n\n"
    assert errors.getvalue() == "✗ broken\n"
    assert console.stream is stream


def test_console_errors_default_to_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    console = Console(color=False)

    console.info("progress")
    console.error("broken")

    captured = capsys.readouterr()
    assert captured.out == "✓ progress\n"
    assert captured.err == "✗ broken\n"


def test_console_colors_when_requested() -> None:
    stream = io.StringIO()
    console = Console(stream, color=True)

    console.info("done")

    assert stream.getvalue() == "\033[0;32m✓\033[0m done\n"


def test_console_detects_non_tty_stream() -> None:
    stream = io.StringIO()
    console = Console(stream)

    console.warn("plain")

    assert stream.getvalue() == "⚠ plain\n"
