"""Exception hierarchy shared by the matcher, automaton, cache and splitter."""

from __future__ import annotations

from pathlib import Path


class TrackerError(Exception):
    """Base exception for all anitrack errors."""


# ----------------------------
# Configuration
# ----------------------------


class ConfigError(TrackerError, ValueError):
    """Raised when config.yaml is malformed or holds an invalid value."""


# ----------------------------
# Episode matching
# ----------------------------


class InvalidPatternError(TrackerError, ValueError):
    """Raised when a custom episode pattern can't be compiled."""


class PatternMismatch(TrackerError):
    """No candidate pattern matched every episode file in a directory."""

    def __init__(self, directory: Path, unmatched: list[str] | None = None) -> None:
        self.directory = directory
        self.unmatched = unmatched or []
        if self.unmatched:
            sample = ", ".join(self.unmatched[:3])
            msg = f"no episode pattern matched every file in {directory} (e.g. {sample})"
        else:
            msg = f"no episode files found in {directory}"
        super().__init__(msg)


class AmbiguousEpisode(TrackerError):
    """Two or more files resolved to the same episode number."""

    def __init__(self, episode: int, paths: list[Path]) -> None:
        self.episode = episode
        self.paths = paths
        names = ", ".join(p.name for p in paths)
        super().__init__(f"episode {episode} matches multiple files: {names}")


class InvalidNameFormatError(TrackerError, ValueError):
    """Raised when a split name format lacks {title} or {episode}."""


# ----------------------------
# Watch status
# ----------------------------


class InvalidTransition(TrackerError):
    """Raised for an unsupported explicit status change; the entry is left untouched."""


class InvalidScoreError(TrackerError, ValueError):
    """Raised when a score falls outside 0-100."""


# ----------------------------
# Storage
# ----------------------------


class StorageError(TrackerError):
    """Raised on SQLite I/O or integrity failures."""


class StorageLockedError(StorageError):
    """Raised when another process already holds the cache open."""


class FatalMigrationError(StorageError):
    """A schema upgrade failed; the process must not continue against the store."""


class UnknownSeriesError(StorageError):
    """Raised when a series id or nickname isn't in the cache."""


class SeriesExistsError(StorageError):
    """Raised when adding a series whose nickname or id is already tracked."""


class SeriesPathError(TrackerError):
    """Raised when a series folder can't be found or isn't a directory."""


# ----------------------------
# Remote
# ----------------------------


class RemoteError(TrackerError):
    """Network, auth or validation failure while talking to the list service."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
