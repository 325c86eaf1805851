"""Saved-timeline library.

Timelines live as ``*.session.json`` files in a per-user directory
(%APPDATA%\\MesmerLine\\sessions on Windows, ~/.mesmerline/sessions
elsewhere). The library lists, loads, saves and deletes them by name.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import ConfigurationError, TimelineValidationError
from .features.registry import FeatureRegistry
from .platform_paths import ensure_dir, get_sessions_dir
from .session.timeline import SESSION_FILE_SUFFIX, Timeline

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class LibraryEntry:
    """Summary of one saved timeline (for listings)."""
    name: str
    path: Path
    session_length: int
    event_count: int
    feature_ids: tuple

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "session_length": self.session_length,
            "event_count": self.event_count,
            "features": list(self.feature_ids),
        }


def export_file_name(name: str) -> str:
    """File name a timeline called ``name`` is saved under."""
    stem = _UNSAFE_CHARS.sub("_", name.strip()).strip("._") or "session"
    return f"{stem}{SESSION_FILE_SUFFIX}"


class TimelineLibrary:
    """Manages the directory of saved timelines.

    Usage:
        library = TimelineLibrary()
        path = library.save(timeline)
        timeline = library.load("Deep Focus")
    """

    def __init__(self, library_dir: Optional[Path] = None, registry: Optional[FeatureRegistry] = None):
        """
        Args:
            library_dir: Directory for session files. Defaults to the
                per-user sessions folder.
            registry: Registry used for ramp range checks on load/save
        """
        if library_dir is None:
            library_dir = get_sessions_dir()
        self.library_dir = ensure_dir(Path(library_dir))
        self.registry = registry
        logger.info(f"[library] Using {self.library_dir}")

    def path_for(self, name: str) -> Path:
        """Resolve a timeline name (or file name) to a path in the library."""
        if name.endswith(SESSION_FILE_SUFFIX):
            return self.library_dir / Path(name).name
        return self.library_dir / export_file_name(name)

    def list_paths(self) -> List[Path]:
        return sorted(self.library_dir.glob(f"*{SESSION_FILE_SUFFIX}"))

    def list_entries(self) -> List[LibraryEntry]:
        """Summaries of every readable timeline; broken files are logged and skipped."""
        entries: List[LibraryEntry] = []
        for path in self.list_paths():
            try:
                timeline = Timeline.load(path, self.registry)
            except (OSError, TimelineValidationError) as exc:
                logger.warning(f"[library] Skipping {path.name}: {exc}")
                continue
            entries.append(LibraryEntry(
                name=timeline.name,
                path=path,
                session_length=timeline.session_length,
                event_count=len(timeline.events),
                feature_ids=tuple(timeline.features_used()),
            ))
        return entries

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def load(self, name: str) -> Timeline:
        """
        Load a saved timeline by name or file name.

        Raises:
            FileNotFoundError: If no such timeline is saved
            TimelineValidationError: If the file is invalid
        """
        return Timeline.load(self.path_for(name), self.registry)

    def save(self, timeline: Timeline, *, overwrite: bool = True) -> Path:
        """
        Save ``timeline`` under a file name derived from its name.

        Raises:
            ConfigurationError: If the file exists and ``overwrite`` is False
            TimelineValidationError: If the timeline is invalid
        """
        path = self.path_for(timeline.name)
        if path.exists() and not overwrite:
            raise ConfigurationError(f"A session named '{timeline.name}' already exists: {path.name}")
        return timeline.save(path, self.registry)

    def delete(self, name: str) -> bool:
        """Delete a saved timeline. Returns False when it did not exist."""
        path = self.path_for(name)
        if not path.exists():
            logger.info(f"[library] Nothing to delete for '{name}'")
            return False
        path.unlink()
        logger.info(f"[library] Deleted {path.name}")
        return True
