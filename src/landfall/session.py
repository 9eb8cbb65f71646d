from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from landfall.config import SessionConfig
from landfall.observability import log_event


LOGGER = logging.getLogger("landfall.session")

SESSION_MARKER_FILES: tuple[str, ...] = ("current_session", "tracked_files.txt")


@dataclass(frozen=True)
class SessionContext:
    root: Path
    state_dir: Path
    tracked_issue_id: str | None = None

    def marker_paths(self) -> tuple[Path, ...]:
        return tuple(self.state_dir / name for name in SESSION_MARKER_FILES)

    def clear_markers(self) -> tuple[Path, ...]:
        removed: list[Path] = []
        for path in self.marker_paths():
            if path.exists():
                path.unlink()
                removed.append(path)
        log_event(
            LOGGER,
            "session_markers_cleared",
            state_dir=str(self.state_dir),
            removed_count=len(removed),
        )
        return tuple(removed)


def load_session_context(root: Path, config: SessionConfig) -> SessionContext:
    state_dir = _resolve(root, config.state_dir)
    marker = _resolve(root, config.issue_marker)
    issue_id: str | None = None
    if marker.is_file():
        content = marker.read_text(encoding="utf-8").strip()
        if content:
            issue_id = content.splitlines()[0].strip()
    return SessionContext(root=root, state_dir=state_dir, tracked_issue_id=issue_id)


def _resolve(root: Path, value: str) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return root / path
