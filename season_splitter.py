"""
Split a directory holding several seasons numbered contiguously.

Given the season chain (season 1 -> sequel -> sequel ...) and each season's
episode count, season k covers raw episodes offset_k + 1 .. offset_k + episodes_k
where offset_k is the sum of the counts before it. Each bucket becomes its own
directory of symlinks back to the original files; nothing is copied or moved.
A season whose directory would be the merged folder itself stays where it is.
Files of other titles found in the same folder get a directory per title.
"""

from __future__ import annotations

import logging
import os
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from episode_matcher import ScannedFile, best_title_match
from series_data import SeriesInfo
from tracker_errors import AmbiguousEpisode, InvalidNameFormatError

logger = logging.getLogger(__name__)

TITLE_PLACEHOLDER = "{title}"
EPISODE_PLACEHOLDER = "{episode}"
EXT_PLACEHOLDER = "{ext}"
DEFAULT_NAME_FORMAT = f"{TITLE_PLACEHOLDER} - {EPISODE_PLACEHOLDER}{EXT_PLACEHOLDER}"

# Guard against sequel chains the service reports as loops
MAX_SEASONS = 64


def sanitize_filename(name: str) -> str:
    """Remove/replace characters invalid in filenames."""
    name = re.sub(r'[<>:"/\\|?*\x00]', "", name)
    name = re.sub(r"\s+", " ", name).strip()
    return name


class NameFormat:
    """Output filename template with {title}, {episode} and an optional {ext}."""

    def __init__(self, fmt: str = DEFAULT_NAME_FORMAT) -> None:
        if TITLE_PLACEHOLDER not in fmt:
            raise InvalidNameFormatError(f"name format must contain {TITLE_PLACEHOLDER}: {fmt!r}")
        if EPISODE_PLACEHOLDER not in fmt:
            raise InvalidNameFormatError(f"name format must contain {EPISODE_PLACEHOLDER}: {fmt!r}")
        self.fmt = fmt

    def render(self, title: str, episode: int, ext: str = "") -> str:
        name = (
            self.fmt.replace(TITLE_PLACEHOLDER, sanitize_filename(title))
            .replace(EPISODE_PLACEHOLDER, f"{episode:02d}")
            .replace(EXT_PLACEHOLDER, ext)
        )
        return name.replace("/", "-")


@dataclass(frozen=True)
class PlannedLink:
    src: Path
    raw_episode: int
    episode: int  # season-relative
    name: str


@dataclass(frozen=True)
class SeasonPlan:
    info: SeriesInfo
    offset: int
    links: list[PlannedLink] = field(default_factory=list)

    @property
    def dir_name(self) -> str:
        return sanitize_filename(self.info.title_preferred) or str(self.info.id)


@dataclass(frozen=True)
class TitleGroup:
    """Files of a different title that share the merged folder."""

    title: str
    files: list[Path]

    @property
    def dir_name(self) -> str:
        return sanitize_filename(self.title)


@dataclass(frozen=True)
class SplitPlan:
    seasons: list[SeasonPlan]
    unassigned: list[Path]
    stopped_at: SeriesInfo | None = None  # first season the user didn't confirm
    others: list[TitleGroup] = field(default_factory=list)


@dataclass
class SplitReport:
    directories: list[Path] = field(default_factory=list)
    in_place: list[Path] = field(default_factory=list)  # seasons already living in the source folder
    counts: Counter[str] = field(default_factory=Counter)

    @property
    def linked(self) -> int:
        return self.counts["linked"] + self.counts["would-link"]

    @property
    def failed(self) -> int:
        return self.counts["error"] + self.counts["missing-src"] + self.counts["exists-different"]


def season_chain(
    first: SeriesInfo,
    fetch_info: Callable[[int], SeriesInfo],
    max_seasons: int = MAX_SEASONS,
) -> list[SeriesInfo]:
    """Follow sequel links from first. Stops at a season without a sequel or on a cycle."""
    chain = [first]
    seen = {first.id}
    current = first

    while current.sequel is not None and len(chain) < max_seasons:
        if current.sequel in seen:
            logger.warning("Sequel cycle at series %d, stopping chain", current.sequel)
            break
        current = fetch_info(current.sequel)
        seen.add(current.id)
        chain.append(current)

    return chain


def season_offsets(counts: list[int]) -> list[int]:
    """[12, 13, 10] -> [0, 12, 25]"""
    offsets: list[int] = []
    total = 0
    for count in counts:
        offsets.append(total)
        total += count
    return offsets


def split_titles(
    files: list[ScannedFile], main_title: str
) -> tuple[list[ScannedFile], list[TitleGroup]]:
    """
    Separate the files of main_title from other titles in the same folder.

    Files without a title hint stay with the main series. The main series is
    the title hint closest to main_title, or the most common one when none is
    close enough.
    """
    by_title: dict[str, list[ScannedFile]] = {}
    untitled: list[ScannedFile] = []
    for f in files:
        if f.title is None:
            untitled.append(f)
        else:
            by_title.setdefault(f.title.casefold(), []).append(f)

    if len(by_title) <= 1:
        return files, []

    keys = list(by_title)
    idx = best_title_match(main_title, [by_title[k][0].title or k for k in keys])
    if idx is None:
        main_key = max(keys, key=lambda k: len(by_title[k]))
    else:
        main_key = keys[idx]

    main = sorted(untitled + by_title[main_key], key=lambda s: (s.episode, s.path.name))
    others = [
        TitleGroup(title=by_title[k][0].title or k, files=[f.path for f in by_title[k]])
        for k in keys
        if k != main_key
    ]
    for group in others:
        logger.info("Found %d file(s) of another title: %s", len(group.files), group.title)
    return main, others


def plan_split(
    files: list[ScannedFile],
    seasons: list[SeriesInfo],
    *,
    is_confirmed: Callable[[SeriesInfo], bool],
    confirm: Callable[[SeriesInfo], bool],
    name_format: NameFormat | None = None,
    main_title: str | None = None,
) -> SplitPlan:
    """
    Bucket raw episode numbers into seasons.

    A season whose count hasn't been confirmed before goes through confirm();
    a "no" ends the plan at that season since every later offset depends on it.
    Seasons with an unknown episode count end it the same way.

    With main_title set, files whose title hint belongs to a different series
    are kept out of the seasons and grouped per title instead.
    """
    name_format = name_format or NameFormat()
    others: list[TitleGroup] = []
    if main_title is not None:
        files, others = split_titles(files, main_title)
    offsets = season_offsets([s.episodes for s in seasons])

    planned: list[SeasonPlan] = []
    assigned: set[Path] = set()
    stopped_at: SeriesInfo | None = None

    for info, offset in zip(seasons, offsets, strict=True):
        if info.episodes <= 0:
            logger.info("Season %d (%s) has no known episode count", info.id, info.title_preferred)
            stopped_at = info
            break
        if not is_confirmed(info) and not confirm(info):
            stopped_at = info
            break

        by_episode: dict[int, list[ScannedFile]] = {}
        for f in files:
            if offset < f.episode <= offset + info.episodes:
                by_episode.setdefault(f.episode - offset, []).append(f)

        links: list[PlannedLink] = []
        for episode, group in sorted(by_episode.items()):
            if len(group) > 1:
                raise AmbiguousEpisode(episode, [f.path for f in group])
            f = group[0]
            links.append(
                PlannedLink(
                    src=f.path,
                    raw_episode=f.episode,
                    episode=episode,
                    name=name_format.render(info.title_preferred, episode, f.path.suffix),
                )
            )
            assigned.add(f.path)

        planned.append(SeasonPlan(info=info, offset=offset, links=links))

    unassigned = [f.path for f in files if f.path not in assigned]
    return SplitPlan(seasons=planned, unassigned=unassigned, stopped_at=stopped_at, others=others)


def ensure_symlink(src: Path, dst: Path, dry_run: bool) -> str:
    """Create a symlink dst -> src (if needed).

    Returns a status string: 'linked', 'exists-same', 'exists-different',
    'would-link', 'missing-src', or 'error'.
    """
    if not src.exists():
        return "missing-src"

    if dst.is_symlink() or dst.exists():
        try:
            if dst.resolve() == src.resolve():
                return "exists-same"
            return "exists-different"
        except OSError:
            return "error"

    if dry_run:
        return "would-link"

    try:
        os.symlink(src.resolve(), dst)
        return "linked"
    except OSError as e:
        logger.error("OSError [%s] linking %s -> %s: %s", e.errno, dst, src, e)
        return "error"


def _same_dir(a: Path, b: Path | None) -> bool:
    return b is not None and a.resolve() == b.resolve()


def apply_split(
    plan: SplitPlan,
    out_dir: Path,
    *,
    dry_run: bool = False,
    source_dir: Path | None = None,
) -> SplitReport:
    """
    Create the season (and other title) directories and fill them with symlinks.

    A directory that is source_dir itself is left alone: its files are already
    where they belong, and linking renamed copies next to them would give every
    episode two files.
    """
    report = SplitReport()

    for season in plan.seasons:
        season_dir = out_dir / season.dir_name
        if _same_dir(season_dir, source_dir):
            logger.info("%s already holds %s, leaving it in place", season_dir, season.info.title_preferred)
            report.in_place.append(season_dir)
            report.counts["in-place"] += len(season.links)
            continue
        if not season.links:
            logger.info("No episodes of %s in the merged folder", season.info.title_preferred)
            continue

        report.directories.append(season_dir)
        if not dry_run:
            season_dir.mkdir(parents=True, exist_ok=True)

        for link in season.links:
            status = ensure_symlink(link.src, season_dir / link.name, dry_run)
            report.counts[status] += 1
            logger.debug("%s: %s -> %s", status, link.src.name, season_dir / link.name)

    for group in plan.others:
        group_dir = out_dir / group.dir_name
        if not group.dir_name or _same_dir(group_dir, source_dir):
            report.in_place.append(group_dir)
            report.counts["in-place"] += len(group.files)
            continue

        report.directories.append(group_dir)
        if not dry_run:
            group_dir.mkdir(parents=True, exist_ok=True)

        # Other titles keep their filenames; a later split of that folder renumbers them
        for src in group.files:
            status = ensure_symlink(src, group_dir / src.name, dry_run)
            report.counts[status] += 1
            logger.debug("%s: %s -> %s", status, src.name, group_dir)

    logger.info(
        "Split into %d dir(s) under %s: %s",
        len(report.directories),
        out_dir,
        dict(report.counts),
    )
    return report
