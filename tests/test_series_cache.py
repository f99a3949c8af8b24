"""Tests for series_cache.py storage, migrations, locking and sync."""

from __future__ import annotations

import sqlite3
import subprocess
import sys
from datetime import date
from pathlib import Path

import pytest

from series_cache import MIGRATIONS, SeriesCache
from series_data import SeriesConfig, SeriesInfo
from tracker_errors import (
    FatalMigrationError,
    RemoteError,
    StorageError,
    StorageLockedError,
    UnknownSeriesError,
)
from watch_status import SeriesEntry, Status, advance_episode

# Runs in a separate interpreter; prints whether it got the database
_CHILD_OPEN = """
import sys
from pathlib import Path

from series_cache import SeriesCache
from tracker_errors import StorageLockedError

try:
    SeriesCache.open(Path(sys.argv[1]), lock_timeout=0.05).close()
except StorageLockedError:
    print("LOCKED")
else:
    print("OPENED")
"""


def _series(series_id: int, nickname: str, episodes: int = 12):
    config = SeriesConfig(id=series_id, nickname=nickname, path=Path(nickname))
    info = SeriesInfo(
        id=series_id,
        title_preferred=nickname.title(),
        title_romaji=nickname,
        episodes=episodes,
        episode_length_mins=24,
    )
    return config, info, SeriesEntry(id=series_id)


class TestRoundTrip:
    """save then load returns the same values."""

    def test_all_fields(self, cache: SeriesCache) -> None:
        config = SeriesConfig(
            id=7,
            nickname="mob",
            path=Path("/media/anime/Mob Psycho 100"),
            episode_matcher="[*] Mob Psycho 100 - #",
            player_args=("--fs", "--volume=50"),
        )
        info = SeriesInfo(
            id=7,
            title_preferred="Mob Psycho 100",
            title_romaji="Mob Psycho 100",
            episodes=12,
            episode_length_mins=24,
            sequel=8,
        )
        entry = SeriesEntry(
            id=7,
            watched_episodes=5,
            score=88,
            status=Status.WATCHING,
            times_rewatched=1,
            start_date=date(2024, 1, 2),
            finish_date=None,
            needs_sync=True,
        )
        cache.save(config, info, entry)

        [loaded] = cache.load_all()
        assert loaded.config == config
        assert loaded.info == info
        assert loaded.entry == entry

    def test_upsert_overwrites(self, cache: SeriesCache) -> None:
        config, info, entry = _series(1, "one")
        cache.save(config, info, entry)
        cache.save(config, info, SeriesEntry(id=1, watched_episodes=3, status=Status.WATCHING))
        assert cache.load(1).entry.watched_episodes == 3

    def test_insertion_order_kept_across_updates(self, cache: SeriesCache) -> None:
        for sid, name in [(30, "c"), (10, "a"), (20, "b")]:
            cache.save(*_series(sid, name))
        # Updating the first one must not move it to the end
        config, info, _ = _series(30, "c")
        cache.save(config, info, SeriesEntry(id=30, watched_episodes=2))
        assert [s.id for s in cache.load_all()] == [30, 10, 20]

    def test_load_by_nickname(self, cache: SeriesCache, saved_series) -> None:
        assert cache.load_by_nickname("frieren").id == 21

    def test_unknown_series(self, cache: SeriesCache) -> None:
        with pytest.raises(UnknownSeriesError):
            cache.load(404)
        with pytest.raises(UnknownSeriesError):
            cache.load_by_nickname("nope")

    def test_mismatched_ids_rejected(self, cache: SeriesCache) -> None:
        config, info, _ = _series(1, "one")
        with pytest.raises(StorageError):
            cache.save(config, info, SeriesEntry(id=2))
        assert cache.load_all() == []

    def test_duplicate_nickname_rolls_back(self, cache: SeriesCache) -> None:
        cache.save(*_series(1, "same"))
        with pytest.raises(StorageError):
            cache.save(*_series(2, "same"))
        assert [s.id for s in cache.load_all()] == [1]
        with pytest.raises(UnknownSeriesError):
            cache.load_entry(2)

    def test_save_entry_requires_series(self, cache: SeriesCache) -> None:
        with pytest.raises(UnknownSeriesError):
            cache.save_entry(SeriesEntry(id=99))

    def test_delete_cascades(self, cache: SeriesCache, saved_series) -> None:
        cache.delete("frieren")
        assert cache.load_all() == []
        with pytest.raises(UnknownSeriesError):
            cache.load_entry(21)
        with pytest.raises(UnknownSeriesError):
            cache.delete("frieren")


class TestIntegrity:
    def test_missing_entry_row_is_storage_error(self, tmp_path: Path) -> None:
        db = tmp_path / "data.sqlite"
        cache = SeriesCache.open(db)
        cache.save(*_series(1, "one"))
        cache._conn.execute("DELETE FROM series_entries WHERE id = 1")
        with pytest.raises(StorageError):
            cache.load_all()
        cache.close()


class TestNeedsSync:
    def test_entries_needing_sync_in_insert_order(self, cache: SeriesCache) -> None:
        for sid, name in [(3, "c"), (1, "a"), (2, "b")]:
            config, info, entry = _series(sid, name)
            cache.save(config, info, SeriesEntry(id=sid, needs_sync=sid != 1))
        assert [e.id for e in cache.entries_needing_sync()] == [3, 2]

    def test_push_clears_flag(self, cache: SeriesCache, saved_series, fake_remote) -> None:
        _, _, entry = saved_series
        dirty = advance_episode(entry, 12, today=date(2024, 3, 9))
        cache.save_entry(dirty)

        synced = cache.sync_to_remote(dirty, fake_remote)
        assert synced.needs_sync is False
        assert cache.load_entry(21).needs_sync is False
        assert fake_remote.pushed[0][0] == 21
        assert fake_remote.pushed[0][1]["watched_episodes"] == 1
        assert fake_remote.pushed[0][1]["status"] == Status.WATCHING

        # Any later local mutation flips it back
        again = advance_episode(cache.load_entry(21), 12)
        cache.save_entry(again)
        assert cache.load_entry(21).needs_sync is True

    def test_failed_push_keeps_flag(self, cache: SeriesCache, saved_series, fake_remote) -> None:
        _, _, entry = saved_series
        dirty = advance_episode(entry, 12, today=date(2024, 3, 9))
        fake_remote.fail_push = True

        with pytest.raises(RemoteError):
            cache.sync_to_remote(dirty, fake_remote)

        stored = cache.load_entry(21)
        assert stored.needs_sync is True
        assert stored.watched_episodes == 1

    def test_pull_overwrites(self, cache: SeriesCache, saved_series, fake_remote) -> None:
        cache.save_entry(SeriesEntry(id=21, watched_episodes=2, status=Status.WATCHING, needs_sync=True))
        fake_remote.entries[21] = SeriesEntry(id=21, watched_episodes=9, score=70, status=Status.ON_HOLD)

        pulled = cache.sync_from_remote(21, fake_remote)
        assert pulled.watched_episodes == 9
        assert pulled.needs_sync is False
        assert cache.load_entry(21) == pulled

    def test_pull_missing_remote_entry_resets(self, cache: SeriesCache, saved_series, fake_remote) -> None:
        cache.save_entry(SeriesEntry(id=21, watched_episodes=4, status=Status.WATCHING, needs_sync=True))
        assert cache.sync_from_remote(21, fake_remote) == SeriesEntry(id=21)

    def test_failed_pull_leaves_local(self, cache: SeriesCache, saved_series, fake_remote) -> None:
        local = SeriesEntry(id=21, watched_episodes=4, status=Status.WATCHING, needs_sync=True)
        cache.save_entry(local)
        fake_remote.fail_pull = True
        with pytest.raises(RemoteError):
            cache.sync_from_remote(21, fake_remote)
        assert cache.load_entry(21) == local


class TestLocking:
    def test_second_open_fails_fast(self, tmp_path: Path) -> None:
        db = tmp_path / "data.sqlite"
        first = SeriesCache.open(db)
        try:
            with pytest.raises(StorageLockedError):
                SeriesCache.open(db, lock_timeout=0.05)
        finally:
            first.close()

    def test_second_process_is_locked_out(self, tmp_path: Path) -> None:
        db = tmp_path / "data.sqlite"
        root = Path(__file__).resolve().parent.parent

        def open_in_child() -> str:
            proc = subprocess.run(
                [sys.executable, "-c", _CHILD_OPEN, str(db)],
                cwd=root,
                capture_output=True,
                text=True,
                timeout=60,
            )
            assert proc.returncode == 0, proc.stderr
            return proc.stdout.strip()

        first = SeriesCache.open(db)
        try:
            assert open_in_child() == "LOCKED"
        finally:
            first.close()
        assert open_in_child() == "OPENED"

    def test_locked_is_storage_error(self) -> None:
        assert issubclass(StorageLockedError, StorageError)

    def test_reopen_after_close(self, tmp_path: Path) -> None:
        db = tmp_path / "data.sqlite"
        SeriesCache.open(db).close()
        with SeriesCache.open(db) as again:
            assert again.load_all() == []


class TestMigrations:
    def test_fresh_db_at_latest_version(self, cache: SeriesCache) -> None:
        assert cache.schema_version() == len(MIGRATIONS)

    def test_upgrade_from_first_version_backfills_order(self, tmp_path: Path) -> None:
        db = tmp_path / "old.sqlite"
        conn = sqlite3.connect(str(db))
        for stmt in MIGRATIONS[0]:
            conn.execute(stmt)
        conn.execute("INSERT INTO series_configs (id, nickname, path) VALUES (5, 'old', 'Old')")
        conn.execute(
            "INSERT INTO series_info VALUES (5, 'Old', 'Old', 10, 24, NULL)"
        )
        conn.execute("INSERT INTO series_entries (id, status, needs_sync) VALUES (5, 0, 1)")
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
        conn.close()

        with SeriesCache.open(db) as cache:
            assert cache.schema_version() == len(MIGRATIONS)
            [series] = cache.load_all()
            assert series.entry.status == Status.WATCHING
            assert [e.id for e in cache.entries_needing_sync()] == [5]
            # A new series goes after the migrated one
            cache.save(*_series(1, "new"))
            assert [s.id for s in cache.load_all()] == [5, 1]

    def test_failed_migration_is_fatal_and_rolled_back(self, tmp_path: Path) -> None:
        db = tmp_path / "bad.sqlite"
        broken = (*MIGRATIONS[:2], ("CREATE TABLE split_seasons (id INTEGER PRIMARY KEY)", "THIS IS NOT SQL"))

        with pytest.raises(FatalMigrationError):
            SeriesCache.open(db, migrations=broken)

        # The first two steps committed, the broken third left nothing behind
        with SeriesCache.open(db, migrations=MIGRATIONS[:2]) as cache:
            assert cache.schema_version() == 2
            tables = {r[0] for r in cache._conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            assert "split_seasons" not in tables

    def test_newer_schema_refused(self, tmp_path: Path) -> None:
        db = tmp_path / "future.sqlite"
        SeriesCache.open(db).close()
        with pytest.raises(FatalMigrationError):
            SeriesCache.open(db, migrations=MIGRATIONS[:1])


class TestSeasons:
    def test_confirm_season(self, cache: SeriesCache) -> None:
        info = SeriesInfo(id=50, title_preferred="S2", title_romaji="S2", episodes=13, episode_length_mins=24)
        assert cache.season_record(50) is None
        assert cache.is_season_confirmed(info) is False

        cache.confirm_season(info)
        record = cache.season_record(50)
        assert record is not None
        assert record.confirmed is True
        assert record.episodes == 13
        assert cache.is_season_confirmed(info) is True

    def test_changed_count_needs_reconfirming(self, cache: SeriesCache) -> None:
        info = SeriesInfo(id=50, title_preferred="S2", title_romaji="S2", episodes=13, episode_length_mins=24)
        cache.confirm_season(info)
        longer = SeriesInfo(id=50, title_preferred="S2", title_romaji="S2", episodes=24, episode_length_mins=24)
        assert cache.is_season_confirmed(longer) is False
