"""
The operations the wizard exposes, wired together.

SeriesTracker resolves files with the episode matcher, transforms entries with
watch_status, persists through SeriesCache and hands pushes to the background
SyncCoordinator when one is attached. Every operation returns a result object
or raises a TrackerError subclass; remote failures during a sync are turned
into a result with sync_error set and needs_sync left on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from functools import partial
from pathlib import Path

import episode_matcher
import watch_status
from list_remote import RemoteService
from season_splitter import NameFormat, SplitPlan, SplitReport, apply_split, plan_split, season_chain
from series_cache import SeriesCache
from series_data import SeriesConfig, SeriesData, SeriesInfo
from sync_worker import SyncCoordinator, SyncResult
from tracker_config import TrackerCfg
from tracker_errors import (
    InvalidTransition,
    RemoteError,
    SeriesExistsError,
    SeriesPathError,
    TrackerError,
    UnknownSeriesError,
)
from watch_status import SeriesEntry, Status

logger = logging.getLogger(__name__)

_UNSET = object()


class Direction(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass(frozen=True)
class AddResult:
    series: SeriesData
    warning: str | None = None  # e.g. list entry couldn't be pulled, started fresh


@dataclass(frozen=True)
class UpdateResult:
    nickname: str
    entry: SeriesEntry | None  # None: queued behind an in-flight sync
    queued: bool = False
    sync_started: bool = False
    sync_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.sync_error is None


@dataclass(frozen=True)
class SplitOutcome:
    plan: SplitPlan
    report: SplitReport
    out_dir: Path


class SeriesTracker:
    def __init__(
        self,
        cfg: TrackerCfg,
        cache: SeriesCache,
        remote: RemoteService,
        coordinator: SyncCoordinator | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.cfg = cfg
        self.cache = cache
        self.remote = remote
        self.coordinator = coordinator
        self.today = today

    # ----------------------------
    # Lookup helpers
    # ----------------------------

    def get(self, nickname: str) -> SeriesData:
        return self.cache.load_by_nickname(nickname)

    def list_series(self) -> list[SeriesData]:
        return self.cache.load_all()

    def series_path(self, series: SeriesData) -> Path:
        return self.cfg.absolute_path(series.config.path)

    def episodes(self, nickname: str) -> dict[int, Path]:
        series = self.get(nickname)
        return episode_matcher.resolve(self.series_path(series), series.config.episode_matcher)

    def next_episode(self, nickname: str) -> tuple[int, Path | None]:
        """The episode number to watch next and its file, if one is on disk."""
        series = self.get(nickname)
        number = series.entry.watched_episodes + 1
        return number, self.episodes(nickname).get(number)

    def _find_series_dir(self, title: str) -> Path:
        base = self.cfg.series_dir
        if not base.is_dir():
            raise SeriesPathError(f"series_dir doesn't exist: {base}")

        dirs = sorted(p for p in base.iterdir() if p.is_dir() and not p.name.startswith("."))
        idx = episode_matcher.best_title_match(title, [d.name for d in dirs])
        if idx is None:
            raise SeriesPathError(f"no folder under {base} looks like {title!r}")
        return dirs[idx]

    def _find_series_info(self, title: str) -> SeriesInfo:
        results = self.remote.search_series(title)
        if not results:
            raise UnknownSeriesError(f"no results for {title!r}")

        candidates = [r.title_preferred for r in results]
        idx = episode_matcher.best_title_match(title, candidates)
        if idx is None:
            romaji = [r.title_romaji for r in results]
            idx = episode_matcher.best_title_match(title, romaji)
        return results[idx if idx is not None else 0]

    # ----------------------------
    # add / set / delete
    # ----------------------------

    def add(
        self,
        nickname: str,
        *,
        series_id: int | None = None,
        path: Path | None = None,
        matcher: str | None = None,
    ) -> AddResult:
        nickname = nickname.strip()
        if not nickname:
            raise TrackerError("nickname can't be empty")
        try:
            self.get(nickname)
        except UnknownSeriesError:
            pass
        else:
            raise SeriesExistsError(f"{nickname!r} is already tracked")

        if path is None:
            path = self._find_series_dir(nickname)
        path = self.cfg.absolute_path(path)
        if not path.is_dir():
            raise SeriesPathError(f"not a directory: {path}")

        # Fails with PatternMismatch / AmbiguousEpisode before anything is stored
        episode_matcher.resolve(path, matcher)

        if series_id is not None:
            info = self.remote.fetch_series_info(series_id)
        else:
            title = episode_matcher.parse_dir_title(path.name) or nickname
            info = self._find_series_info(title)

        if any(s.id == info.id for s in self.cache.load_all()):
            raise SeriesExistsError(f"{info.title_preferred} ({info.id}) is already tracked")

        warning = None
        try:
            entry = self.remote.fetch_entry(info.id) or SeriesEntry(id=info.id)
        except RemoteError as e:
            warning = f"couldn't pull list entry, starting fresh: {e}"
            logger.warning("add %s: %s", nickname, warning)
            entry = SeriesEntry(id=info.id)

        config = SeriesConfig(
            id=info.id,
            nickname=nickname,
            path=self.cfg.stripped_path(path),
            episode_matcher=matcher or None,
        )
        self.cache.save(config, info, entry)
        logger.info("Added %s as %s (%d)", info.title_preferred, nickname, info.id)
        return AddResult(series=SeriesData(config, info, entry), warning=warning)

    def set(
        self,
        nickname: str,
        *,
        path: Path | None = None,
        matcher: str | None | object = _UNSET,
        player_args: tuple[str, ...] | None = None,
    ) -> SeriesData:
        """Change where a series lives, its custom pattern (None clears it) or its player args."""
        series = self.get(nickname)
        config = series.config

        if path is not None:
            abs_path = self.cfg.absolute_path(path)
            if not abs_path.is_dir():
                raise SeriesPathError(f"not a directory: {abs_path}")
            config = replace(config, path=self.cfg.stripped_path(abs_path))
        if matcher is not _UNSET:
            config = replace(config, episode_matcher=matcher or None)  # type: ignore[arg-type]
        if player_args is not None:
            config = replace(config, player_args=tuple(player_args))

        episode_matcher.resolve(self.cfg.absolute_path(config.path), config.episode_matcher)

        self.cache.save(config, series.info, series.entry)
        return SeriesData(config, series.info, series.entry)

    def refresh_info(self, nickname: str) -> SeriesData:
        series = self.get(nickname)
        info = self.remote.fetch_series_info(series.id)
        self.cache.save(series.config, info, series.entry)
        return SeriesData(series.config, info, series.entry)

    def delete(self, nickname: str) -> None:
        series = self.get(nickname)
        if self.coordinator and self.coordinator.worker.is_busy(series.id):
            logger.info("Deleting %s with a sync in flight; its result will be dropped", nickname)
        self.cache.delete(nickname)

    # ----------------------------
    # Entry mutations
    # ----------------------------

    def _mutate(
        self,
        nickname: str,
        fn: Callable[[SeriesEntry], SeriesEntry],
        *,
        sync: bool = False,
    ) -> UpdateResult:
        series = self.get(nickname)

        if self.coordinator is not None:
            entry = self.coordinator.mutate(series.id, fn)
            if entry is None:
                return UpdateResult(nickname, None, queued=True)
            if sync and self.coordinator.push(series.id):
                return UpdateResult(nickname, entry, sync_started=True)
            return UpdateResult(nickname, entry)

        entry = fn(series.entry)
        self.cache.save_entry(entry)
        if sync:
            return self._push(nickname, entry)
        return UpdateResult(nickname, entry)

    def advance(
        self,
        nickname: str,
        direction: Direction = Direction.FORWARD,
        *,
        sync: bool = False,
    ) -> UpdateResult:
        series = self.get(nickname)
        if Direction(direction) == Direction.FORWARD:
            fn = partial(
                watch_status.advance_episode,
                total_episodes=series.info.episodes,
                dropped_policy=self.cfg.dropped_policy,
                today=self.today(),
            )
        else:
            fn = partial(watch_status.regress_episode, today=self.today())
        return self._mutate(nickname, fn, sync=sync)

    def rate(self, nickname: str, score: int | None, *, sync: bool = False) -> UpdateResult:
        watch_status.check_score(score)
        return self._mutate(nickname, partial(watch_status.set_score, score=score), sync=sync)

    def set_status(self, nickname: str, target: str | Status, *, sync: bool = False) -> UpdateResult:
        status = watch_status.parse_status(target)
        fn = partial(
            watch_status.set_status,
            target=status,
            reset_dates=self.cfg.reset_dates_on_rewatch,
            today=self.today(),
        )
        return self._mutate(nickname, fn, sync=sync)

    def begin_rewatch(self, nickname: str, *, sync: bool = False) -> UpdateResult:
        series = self.get(nickname)
        if series.entry.status != Status.COMPLETED:
            raise InvalidTransition(f"can only rewatch a completed series ({nickname} is {series.entry.status})")
        fn = partial(watch_status.begin_rewatch, reset_dates=self.cfg.reset_dates_on_rewatch)
        return self._mutate(nickname, fn, sync=sync)

    # ----------------------------
    # Sync
    # ----------------------------

    def _push(self, nickname: str, entry: SeriesEntry) -> UpdateResult:
        try:
            synced = self.cache.sync_to_remote(entry, self.remote)
        except RemoteError as e:
            logger.warning("Push of %s failed: %s", nickname, e)
            return UpdateResult(nickname, replace(entry, needs_sync=True), sync_error=str(e))
        return UpdateResult(nickname, synced)

    def sync_to_remote(self, nickname: str) -> UpdateResult:
        """Push the stored entry. With a coordinator attached the push runs in the background."""
        series = self.get(nickname)
        if self.coordinator is not None:
            if not self.coordinator.push(series.id):
                return UpdateResult(nickname, None, queued=True)
            return UpdateResult(nickname, series.entry, sync_started=True)
        return self._push(nickname, series.entry)

    def sync_from_remote(self, nickname: str) -> UpdateResult:
        """Overwrite the stored entry with the list's. Backgrounded like sync_to_remote."""
        series = self.get(nickname)
        if self.coordinator is not None:
            if not self.coordinator.pull(series.id):
                return UpdateResult(nickname, None, queued=True)
            return UpdateResult(nickname, series.entry, sync_started=True)
        try:
            entry = self.cache.sync_from_remote(series.id, self.remote)
        except RemoteError as e:
            logger.warning("Pull of %s failed: %s", nickname, e)
            return UpdateResult(nickname, series.entry, sync_error=str(e))
        return UpdateResult(nickname, entry)

    def sync_all(self) -> list[UpdateResult]:
        """Push every entry with needs_sync set, in the order they were added."""
        by_id = {s.id: s.nickname for s in self.cache.load_all()}
        dirty = self.cache.entries_needing_sync()

        if self.coordinator is not None:
            started = set(self.coordinator.push_all())
            return [
                UpdateResult(by_id.get(e.id, str(e.id)), e, sync_started=True)
                if e.id in started
                else UpdateResult(by_id.get(e.id, str(e.id)), None, queued=True)
                for e in dirty
            ]

        return [self._push(by_id.get(e.id, str(e.id)), e) for e in dirty]

    def drain_sync(self, timeout: float | None = 0.0) -> list[SyncResult]:
        if self.coordinator is None:
            return []
        return self.coordinator.drain(timeout)

    # ----------------------------
    # Split
    # ----------------------------

    def split(
        self,
        directory: Path,
        *,
        confirm: Callable[[SeriesInfo], bool],
        series_id: int | None = None,
        out_dir: Path | None = None,
        pattern: str | None = None,
        name_format: NameFormat | None = None,
        dry_run: bool = False,
    ) -> SplitOutcome:
        directory = self.cfg.absolute_path(directory)
        files = episode_matcher.scan_episode_numbers(directory, pattern)

        if series_id is not None:
            first = self.remote.fetch_series_info(series_id)
        else:
            title = episode_matcher.parse_dir_title(directory.name) or directory.name
            first = self._find_series_info(title)

        seasons = season_chain(first, self.remote.fetch_series_info)

        def confirm_and_remember(info: SeriesInfo) -> bool:
            if not confirm(info):
                return False
            self.cache.confirm_season(info)
            return True

        plan = plan_split(
            files,
            seasons,
            is_confirmed=self.cache.is_season_confirmed,
            confirm=confirm_and_remember,
            name_format=name_format,
            main_title=episode_matcher.parse_dir_title(directory.name) or first.title_preferred,
        )
        target = out_dir or directory.parent
        report = apply_split(plan, target, dry_run=dry_run, source_dir=directory)
        return SplitOutcome(plan=plan, report=report, out_dir=target)
