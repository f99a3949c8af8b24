"""
Episode filename matching.

Two kinds of patterns map a filename to an episode number:

- Custom patterns, written in a tiny glob-like language:
    literal characters match themselves (case-insensitive, runs of whitespace
    collapse to one space), `*` matches any run of characters up to the next
    literal, and `#` matches a run of digits and yields the episode number.
    `**` and `##` escape a literal `*` or `#`.

      "[*] Series Title - EP#"  matches  "[Some Group] Series Title - ep12.mkv"  -> 12

- Built-in patterns, tried in a fixed order until one matches every file in a
  directory:
      [Group] Series Title - 01 [1080p].mkv
      [Group]_Series_Title_-_01.mkv / Series.Title.01.mkv
      Series Title - 01 (1080p).mkv / Series Title E01 [720p].mkv
      Series Title - 01.mkv
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from rapidfuzz import fuzz

from tracker_errors import AmbiguousEpisode, InvalidPatternError, PatternMismatch

logger = logging.getLogger(__name__)

VIDEO_EXTS = {".mkv", ".mp4", ".avi", ".m2ts", ".ts", ".webm", ".m4v"}

WILDCARD = "*"
EPISODE_MARKER = "#"


@dataclass(frozen=True)
class EpisodeMatch:
    episode: int
    title: str | None = None


@dataclass(frozen=True)
class ScannedFile:
    path: Path
    episode: int
    title: str | None = None


def _squash_ws(text: str) -> str:
    return " ".join(text.split())


def clean_title(raw: str) -> str:
    """Turn a captured title into something readable.

    '[Group]_Series_Name_-' -> 'Series Name'
    """
    s = re.sub(r"^(?:\s*[\[(][^\])]*[\])])+", "", raw)
    s = s.replace("_", " ").replace(".", " ")
    s = _squash_ws(s)
    return s.strip(" -")


# ---------------------------------------------------------------------------
# Custom patterns
# ---------------------------------------------------------------------------


class CustomPattern:
    """A user supplied pattern, compiled once to a regex."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._regex = self._compile(pattern)

    @staticmethod
    def _compile(pattern: str) -> re.Pattern[str]:
        text = _squash_ws(pattern)
        parts: list[str] = []
        has_marker = False
        i = 0

        while i < len(text):
            ch = text[i]
            if ch in (WILDCARD, EPISODE_MARKER):
                # Doubled marker characters are literals
                if i + 1 < len(text) and text[i + 1] == ch:
                    parts.append(re.escape(ch))
                    i += 2
                    continue
                if ch == WILDCARD:
                    parts.append(".*?")
                elif not has_marker:
                    parts.append(r"(?P<episode>\d+)")
                    has_marker = True
                else:
                    parts.append(r"\d+")
            else:
                parts.append(re.escape(ch))
            i += 1

        if not has_marker:
            raise InvalidPatternError(
                f"pattern {pattern!r} has no episode marker ({EPISODE_MARKER!r})"
            )

        return re.compile("".join(parts), re.IGNORECASE)

    @property
    def name(self) -> str:
        return f"custom:{self.pattern}"

    def match(self, filename: str) -> EpisodeMatch | None:
        m = self._regex.match(_squash_ws(filename))
        if not m:
            return None
        return EpisodeMatch(episode=int(m.group("episode")))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CustomPattern) and other.pattern == self.pattern

    def __hash__(self) -> int:
        return hash(self.pattern)

    def __repr__(self) -> str:
        return f"CustomPattern({self.pattern!r})"


# ---------------------------------------------------------------------------
# Built-in patterns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuiltinPattern:
    name: str
    regex: re.Pattern[str]

    def match(self, filename: str) -> EpisodeMatch | None:
        m = self.regex.match(_squash_ws(filename))
        if not m:
            return None
        title = clean_title(m.group("title")) or None
        return EpisodeMatch(episode=int(m.group("episode")), title=title)


_VERSION = r"(?:v\d+)?"
_EXT = r"\.\w+$"

# Order matters: the first pattern that matches every file in a directory wins.
BUILTIN_PATTERNS: tuple[BuiltinPattern, ...] = (
    # [Group] Series Title - 01 [tag][tag].mkv
    BuiltinPattern(
        "bracket-group",
        re.compile(
            r"^\[[^\]]+\](?:\s*\[[^\]]*\])*\s*"
            r"(?P<title>.+?)\s+-\s+"
            r"(?P<episode>\d+)" + _VERSION + r"(?:\s*[\[(][^\])]*[\])])*" + _EXT,
            re.IGNORECASE,
        ),
    ),
    # [Group]_Series_Title_-_01_[tag].mkv / Series.Title.01.mkv
    BuiltinPattern(
        "separated",
        re.compile(
            r"^(?:\[[^\]]+\][_.]*)?"
            r"(?P<title>[^\s]+)[_.]+(?:-[_.]+)?(?:ep?)?"
            r"(?P<episode>\d+)" + _VERSION + r"(?:[_.]+[^\s]*?)?" + _EXT,
            re.IGNORECASE,
        ),
    ),
    # Series Title - 01 (1080p).mkv / Series Title E01 [720p].mkv / Title.S01E05.1080p.mkv
    BuiltinPattern(
        "resolution-tagged",
        re.compile(
            r"^(?:\[[^\]]+\]\s*)*"
            r"(?P<title>.+?)[\s_.]+(?:-[\s_.]+)?"
            r"(?:s\d{1,2})?(?:e(?:p(?:isode)?)?\.?\s?)?"
            r"(?P<episode>\d{1,4})" + _VERSION + r"[\s_.-]*[\[(]?\d{3,4}[pi][\])]?.*" + _EXT,
            re.IGNORECASE,
        ),
    ),
    # Series Title - 01.mkv
    BuiltinPattern(
        "title-dash-episode",
        re.compile(
            r"^(?P<title>.+?)\s*-\s*(?P<episode>\d+)" + _VERSION + r"(?:\s.*)?" + _EXT,
            re.IGNORECASE,
        ),
    ),
)

Pattern = CustomPattern | BuiltinPattern


def compile_pattern(pattern: str | Pattern | None) -> Pattern | None:
    """Accept a raw pattern string, an already built pattern, or None (built-ins)."""
    if pattern is None or isinstance(pattern, CustomPattern | BuiltinPattern):
        return pattern
    if not pattern.strip():
        return None
    return CustomPattern(pattern)


def match(pattern: str | Pattern, filename: str) -> EpisodeMatch | None:
    """Match a single filename. Returns None when the pattern doesn't apply."""
    compiled = compile_pattern(pattern)
    if compiled is None:
        for builtin in BUILTIN_PATTERNS:
            result = builtin.match(filename)
            if result:
                return result
        return None
    return compiled.match(filename)


# ---------------------------------------------------------------------------
# Directory level
# ---------------------------------------------------------------------------


def list_episode_files(directory: Path) -> list[Path]:
    """Visible video files directly inside directory, sorted by name."""
    if not directory.is_dir():
        raise PatternMismatch(directory)
    return sorted(
        p
        for p in directory.iterdir()
        if p.is_file() and not p.name.startswith(".") and p.suffix.lower() in VIDEO_EXTS
    )


def _match_all(
    pattern: Pattern, files: list[Path]
) -> tuple[list[tuple[Path, EpisodeMatch]], list[str]]:
    matched: list[tuple[Path, EpisodeMatch]] = []
    unmatched: list[str] = []
    for f in files:
        result = pattern.match(f.name)
        if result is None:
            unmatched.append(f.name)
        else:
            matched.append((f, result))
    return matched, unmatched


def select_pattern(
    directory: Path, pattern: str | Pattern | None = None
) -> tuple[Pattern, list[tuple[Path, EpisodeMatch]]]:
    """Pick the pattern that matches every episode file in directory.

    A custom pattern takes precedence and must match everything on its own.
    Raises PatternMismatch otherwise.
    """
    files = list_episode_files(directory)
    if not files:
        raise PatternMismatch(directory)

    compiled = compile_pattern(pattern)
    if compiled is not None:
        matched, unmatched = _match_all(compiled, files)
        if unmatched:
            raise PatternMismatch(directory, unmatched)
        return compiled, matched

    best_unmatched: list[str] | None = None
    for builtin in BUILTIN_PATTERNS:
        matched, unmatched = _match_all(builtin, files)
        if not unmatched:
            logger.debug("Using %s pattern for %s", builtin.name, directory)
            return builtin, matched
        if best_unmatched is None or len(unmatched) < len(best_unmatched):
            best_unmatched = unmatched

    raise PatternMismatch(directory, best_unmatched)


def resolve(directory: Path, pattern: str | Pattern | None = None) -> dict[int, Path]:
    """Map episode number -> file for a single-season directory."""
    _, matched = select_pattern(directory, pattern)

    by_episode: dict[int, list[Path]] = {}
    for path, result in matched:
        by_episode.setdefault(result.episode, []).append(path)

    for episode, paths in sorted(by_episode.items()):
        if len(paths) > 1:
            raise AmbiguousEpisode(episode, paths)

    return {episode: paths[0] for episode, paths in sorted(by_episode.items())}


def scan_episode_numbers(
    directory: Path, pattern: str | Pattern | None = None
) -> list[ScannedFile]:
    """Raw per-file episode numbers, duplicates allowed (used by the splitter)."""
    _, matched = select_pattern(directory, pattern)
    scanned = [ScannedFile(path, result.episode, result.title) for path, result in matched]
    return sorted(scanned, key=lambda s: (s.episode, s.path.name))


# ---------------------------------------------------------------------------
# Title detection
# ---------------------------------------------------------------------------

DIR_TITLE_REGEX = re.compile(r"^(?:\[[^\]]+\]\s*)*(?P<title>.+?)\s*(?:\(|\[|$)")


def parse_dir_title(name: str) -> str | None:
    """Pull a series title out of a folder name.

    '[Group] Series Title (01-13) [1080p]' -> 'Series Title'
    """
    m = DIR_TITLE_REGEX.match(name.strip())
    if not m:
        return None
    title = clean_title(m.group("title"))
    return title or None


def best_title_match(name: str, titles: list[str], min_score: float = 60.0) -> int | None:
    """Index of the title most similar to name, or None below min_score (0-100)."""
    needle = name.casefold()
    best_idx: int | None = None
    best_score = 0.0

    for idx, title in enumerate(titles):
        candidate = parse_dir_title(title) or title
        score = fuzz.WRatio(needle, candidate.casefold())
        if score > best_score:
            best_idx, best_score = idx, score
            if score >= 99:
                break

    if best_score < min_score:
        return None
    return best_idx
