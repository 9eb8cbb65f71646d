"""Decision signals handed to the calling agent.

A signal is emitted at a decision point that needs a human answer. It is
printed as ``KEY=value`` lines between blank lines on stdout and ends the
current pass; the agent asks the question and re-invokes the relevant
command with an explicit flag. Nothing about a signal survives the process.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Literal, TextIO

from landfall.observability import log_event


LOGGER = logging.getLogger("landfall.signals")

SignalKind = Literal["ADMIN_MERGE", "ISSUE_STATUS", "APPLY_AVAILABLE"]

_MARKERS: dict[SignalKind, str] = {
    "ADMIN_MERGE": "ADMIN_MERGE_AVAILABLE",
    "ISSUE_STATUS": "ISSUE_STATUS_QUESTION",
    "APPLY_AVAILABLE": "TFC_APPLY_AVAILABLE",
}
_PREFIXES: dict[SignalKind, str] = {
    "ADMIN_MERGE": "ADMIN_MERGE_",
    "ISSUE_STATUS": "ISSUE_",
    "APPLY_AVAILABLE": "TFC_",
}


class SignalAlreadyEmittedError(RuntimeError):
    pass


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    payload: tuple[tuple[str, str], ...]

    def get(self, key: str) -> str | None:
        for name, value in self.payload:
            if name == key:
                return value
        return None

    def as_dict(self) -> dict[str, str]:
        return dict(self.payload)


def admin_merge_signal(*, pr_number: int, branch: str, default_branch: str) -> Signal:
    return Signal(
        kind="ADMIN_MERGE",
        payload=(
            ("pr_number", str(pr_number)),
            ("branch", branch),
            ("default_branch", default_branch),
        ),
    )


def issue_status_signal(*, issue_id: str, pr_number: int, default_branch: str) -> Signal:
    return Signal(
        kind="ISSUE_STATUS",
        payload=(
            ("id", issue_id),
            ("pr_number", str(pr_number)),
            ("default_branch", default_branch),
        ),
    )


def apply_available_signal(
    *, run_id: str, workspace: str, organization: str, run_url: str
) -> Signal:
    return Signal(
        kind="APPLY_AVAILABLE",
        payload=(
            ("run_id", run_id),
            ("workspace", workspace),
            ("org", organization),
            ("run_url", run_url),
        ),
    )


def render_signal(signal: Signal) -> tuple[str, ...]:
    prefix = _PREFIXES[signal.kind]
    lines = [f"{_MARKERS[signal.kind]}=true"]
    for key, value in signal.payload:
        lines.append(f"{prefix}{key.upper()}={_single_line(value)}")
    return tuple(lines)


def parse_signals(lines: Iterable[str]) -> tuple[Signal, ...]:
    kinds_by_marker = {marker: kind for kind, marker in _MARKERS.items()}
    parsed: list[Signal] = []
    current_kind: SignalKind | None = None
    current_payload: list[tuple[str, str]] = []

    for raw_line in lines:
        line = raw_line.strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or not key.replace("_", "").isalnum() or not key.isupper():
            continue

        marker_kind = kinds_by_marker.get(key)
        if marker_kind is not None:
            if current_kind is not None:
                parsed.append(Signal(kind=current_kind, payload=tuple(current_payload)))
            if value.strip() == "true":
                current_kind = marker_kind
                current_payload = []
            else:
                current_kind = None
            continue

        if current_kind is None:
            continue
        prefix = _PREFIXES[current_kind]
        if key.startswith(prefix):
            current_payload.append((key[len(prefix) :].lower(), value))

    if current_kind is not None:
        parsed.append(Signal(kind=current_kind, payload=tuple(current_payload)))
    return tuple(parsed)


class SignalChannel:
    """Writes each signal kind at most once for the current pass."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._emitted: list[Signal] = []

    @property
    def emitted(self) -> tuple[Signal, ...]:
        return tuple(self._emitted)

    def emit(self, signal: Signal) -> None:
        if any(existing.kind == signal.kind for existing in self._emitted):
            raise SignalAlreadyEmittedError(f"{signal.kind} signal already emitted in this pass")
        self._emitted.append(signal)
        self._stream.write("\n")
        for line in render_signal(signal):
            self._stream.write(f"{line}\n")
        self._stream.write("\n")
        self._stream.flush()
        log_event(
            LOGGER, "signal_emitted", kind=signal.kind, keys=[key for key, _ in signal.payload]
        )


def _single_line(value: str) -> str:
    return " ".join(value.split())
