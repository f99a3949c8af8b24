"""
Durable local store for tracked series.

One SQLite file, opened by a single process at a time:

    series_configs   id, nickname, path, episode_matcher, player_args
    series_info      id -> series_configs.id (cascade), titles, episode counts, sequel
    series_entries   id -> series_configs.id (cascade), progress, status, dates, needs_sync
    split_seasons    seasons the splitter has seen and whether their counts were confirmed

Entries are whole-row overwrites in both directions: a push clears needs_sync,
a pull replaces the local entry.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any

from list_remote import RemoteService, entry_fields
from series_data import SeasonRecord, SeriesConfig, SeriesData, SeriesInfo
from tracker_errors import (
    FatalMigrationError,
    RemoteError,
    StorageError,
    StorageLockedError,
    UnknownSeriesError,
)
from watch_status import SeriesEntry, Status

logger = logging.getLogger(__name__)

# Each step runs in its own transaction and bumps PRAGMA user_version to its index + 1.
MIGRATIONS: tuple[tuple[str, ...], ...] = (
    (
        """
        CREATE TABLE series_configs (
            id              INTEGER PRIMARY KEY,
            nickname        TEXT    NOT NULL UNIQUE,
            path            TEXT    NOT NULL,
            episode_matcher TEXT,
            player_args     TEXT
        )
        """,
        """
        CREATE TABLE series_info (
            id                  INTEGER PRIMARY KEY
                                REFERENCES series_configs(id) ON DELETE CASCADE,
            title_preferred     TEXT    NOT NULL,
            title_romaji        TEXT    NOT NULL,
            episodes            INTEGER NOT NULL,
            episode_length_mins INTEGER NOT NULL,
            sequel              INTEGER
        )
        """,
        """
        CREATE TABLE series_entries (
            id               INTEGER PRIMARY KEY
                             REFERENCES series_configs(id) ON DELETE CASCADE,
            watched_episodes INTEGER NOT NULL DEFAULT 0,
            score            INTEGER,
            status           INTEGER NOT NULL DEFAULT 4,
            times_rewatched  INTEGER NOT NULL DEFAULT 0,
            start_date       TEXT,
            finish_date      TEXT,
            needs_sync       INTEGER NOT NULL DEFAULT 0
        )
        """,
    ),
    (
        "ALTER TABLE series_entries ADD COLUMN insert_order INTEGER NOT NULL DEFAULT 0",
        "UPDATE series_entries SET insert_order = rowid",
    ),
    (
        """
        CREATE TABLE split_seasons (
            id        INTEGER PRIMARY KEY,
            title     TEXT    NOT NULL,
            episodes  INTEGER NOT NULL,
            sequel    INTEGER,
            confirmed INTEGER NOT NULL DEFAULT 0
        )
        """,
        "CREATE INDEX idx_entries_needs_sync ON series_entries(needs_sync)",
    ),
)

_SELECT_SERIES = """
SELECT
    c.id              AS id,
    c.nickname        AS nickname,
    c.path            AS path,
    c.episode_matcher AS episode_matcher,
    c.player_args     AS player_args,
    i.id              AS info_id,
    i.title_preferred AS title_preferred,
    i.title_romaji    AS title_romaji,
    i.episodes        AS episodes,
    i.episode_length_mins AS episode_length_mins,
    i.sequel          AS sequel,
    e.id              AS entry_id,
    e.watched_episodes AS watched_episodes,
    e.score           AS score,
    e.status          AS status,
    e.times_rewatched AS times_rewatched,
    e.start_date      AS start_date,
    e.finish_date     AS finish_date,
    e.needs_sync      AS needs_sync
FROM series_configs c
LEFT JOIN series_info i ON i.id = c.id
LEFT JOIN series_entries e ON e.id = c.id
"""

_UPSERT_CONFIG = """
INSERT INTO series_configs (id, nickname, path, episode_matcher, player_args)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    nickname = excluded.nickname,
    path = excluded.path,
    episode_matcher = excluded.episode_matcher,
    player_args = excluded.player_args
"""

_UPSERT_INFO = """
INSERT INTO series_info (id, title_preferred, title_romaji, episodes, episode_length_mins, sequel)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    title_preferred = excluded.title_preferred,
    title_romaji = excluded.title_romaji,
    episodes = excluded.episodes,
    episode_length_mins = excluded.episode_length_mins,
    sequel = excluded.sequel
"""

# insert_order is assigned on first insert only
_UPSERT_ENTRY = """
INSERT INTO series_entries (
    id, watched_episodes, score, status, times_rewatched,
    start_date, finish_date, needs_sync, insert_order
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?,
        (SELECT COALESCE(MAX(insert_order), 0) + 1 FROM series_entries))
ON CONFLICT(id) DO UPDATE SET
    watched_episodes = excluded.watched_episodes,
    score = excluded.score,
    status = excluded.status,
    times_rewatched = excluded.times_rewatched,
    start_date = excluded.start_date,
    finish_date = excluded.finish_date,
    needs_sync = excluded.needs_sync
"""

_UPDATE_ENTRY = """
UPDATE series_entries SET
    watched_episodes = ?,
    score = ?,
    status = ?,
    times_rewatched = ?,
    start_date = ?,
    finish_date = ?,
    needs_sync = ?
WHERE id = ?
"""


def _iso(d: date | None) -> str | None:
    return d.isoformat() if d else None


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise StorageError(f"bad date in cache: {value!r}") from e


def _entry_params(entry: SeriesEntry) -> tuple[Any, ...]:
    return (
        entry.watched_episodes,
        entry.score,
        int(entry.status),
        entry.times_rewatched,
        _iso(entry.start_date),
        _iso(entry.finish_date),
        int(entry.needs_sync),
    )


def _row_to_entry(row: sqlite3.Row, id_key: str = "id") -> SeriesEntry:
    try:
        status = Status(row["status"])
    except ValueError as e:
        raise StorageError(f"unknown status code {row['status']} for series {row[id_key]}") from e
    return SeriesEntry(
        id=row[id_key],
        watched_episodes=row["watched_episodes"],
        score=row["score"],
        status=status,
        times_rewatched=row["times_rewatched"],
        start_date=_parse_date(row["start_date"]),
        finish_date=_parse_date(row["finish_date"]),
        needs_sync=bool(row["needs_sync"]),
    )


def _row_to_series(row: sqlite3.Row) -> SeriesData:
    if row["info_id"] is None or row["entry_id"] is None:
        raise StorageError(f"series {row['id']} ({row['nickname']}) is missing its info or entry row")

    config = SeriesConfig(
        id=row["id"],
        nickname=row["nickname"],
        path=Path(row["path"]),
        episode_matcher=row["episode_matcher"],
        player_args=SeriesConfig.parse_player_args(row["player_args"]),
    )
    info = SeriesInfo(
        id=row["id"],
        title_preferred=row["title_preferred"],
        title_romaji=row["title_romaji"],
        episodes=row["episodes"],
        episode_length_mins=row["episode_length_mins"],
        sequel=row["sequel"],
    )
    return SeriesData(config=config, info=info, entry=_row_to_entry(row, "entry_id"))


def _is_locked(exc: sqlite3.Error) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class SeriesCache:
    """Owns the SQLite connection. Not thread safe: use it from the main thread only."""

    def __init__(self, conn: sqlite3.Connection, path: Path) -> None:
        self._conn = conn
        self.path = path

    # ----------------------------
    # Lifecycle
    # ----------------------------

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        lock_timeout: float = 0.1,
        migrations: Sequence[Sequence[str]] = MIGRATIONS,
    ) -> SeriesCache:
        """
        Open (creating if needed) the cache at path and take the exclusive lock.

        Raises StorageLockedError when another process holds it and
        FatalMigrationError when the schema can't be brought up to date.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(str(path), timeout=lock_timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA locking_mode=EXCLUSIVE")
            # An exclusive write transaction takes the file lock; locking_mode keeps it after COMMIT.
            conn.execute("BEGIN EXCLUSIVE")
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            conn.close()
            if _is_locked(e):
                raise StorageLockedError(f"{path} is already open in another process") from e
            raise StorageError(f"Cannot lock {path}: {e}") from e
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Cannot lock {path}: {e}") from e

        cache = cls(conn, path)
        try:
            cache._migrate(migrations)
        except FatalMigrationError:
            conn.close()
            raise
        logger.info("Opened series cache at %s", path)
        return cache

    def close(self) -> None:
        try:
            self._conn.execute("PRAGMA optimize")
        except sqlite3.Error as e:
            logger.warning("PRAGMA optimize failed: %s", e)
        finally:
            self._conn.close()

    def __enter__(self) -> SeriesCache:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ----------------------------
    # Migrations
    # ----------------------------

    def schema_version(self) -> int:
        return int(self._conn.execute("PRAGMA user_version").fetchone()[0])

    def _migrate(self, migrations: Sequence[Sequence[str]]) -> None:
        try:
            current = self.schema_version()
        except sqlite3.Error as e:
            raise FatalMigrationError(f"Cannot read schema version of {self.path}: {e}") from e

        if current > len(migrations):
            raise FatalMigrationError(
                f"{self.path} has schema version {current}, newer than this program ({len(migrations)})"
            )

        for version, statements in enumerate(migrations[current:], start=current + 1):
            try:
                self._conn.execute("BEGIN")
                for stmt in statements:
                    self._conn.execute(stmt)
                self._conn.execute(f"PRAGMA user_version = {version:d}")
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise FatalMigrationError(f"Migration to schema version {version} failed: {e}") from e
            logger.info("Migrated %s to schema version %d", self.path, version)

    # ----------------------------
    # Helpers
    # ----------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot start transaction: {e}") from e
        try:
            yield self._conn
        except sqlite3.Error as e:
            self._conn.execute("ROLLBACK")
            raise StorageError(str(e)) from e
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise StorageError(f"Commit failed: {e}") from e

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    # ----------------------------
    # Series
    # ----------------------------

    def load_all(self) -> list[SeriesData]:
        rows = self._query(_SELECT_SERIES + " ORDER BY e.insert_order, c.id")
        return [_row_to_series(row) for row in rows]

    def load(self, series_id: int) -> SeriesData:
        rows = self._query(_SELECT_SERIES + " WHERE c.id = ?", (series_id,))
        if not rows:
            raise UnknownSeriesError(f"no series with id {series_id}")
        return _row_to_series(rows[0])

    def load_by_nickname(self, nickname: str) -> SeriesData:
        rows = self._query(_SELECT_SERIES + " WHERE c.nickname = ?", (nickname,))
        if not rows:
            raise UnknownSeriesError(f"no series named {nickname!r}")
        return _row_to_series(rows[0])

    def load_entry(self, series_id: int) -> SeriesEntry:
        rows = self._query("SELECT * FROM series_entries WHERE id = ?", (series_id,))
        if not rows:
            raise UnknownSeriesError(f"no entry for series {series_id}")
        return _row_to_entry(rows[0])

    def save(self, config: SeriesConfig, info: SeriesInfo, entry: SeriesEntry) -> None:
        """Upsert all three rows in one transaction."""
        if not (config.id == info.id == entry.id):
            raise StorageError(
                f"mismatched ids: config={config.id} info={info.id} entry={entry.id}"
            )

        with self._transaction() as conn:
            conn.execute(
                _UPSERT_CONFIG,
                (
                    config.id,
                    config.nickname,
                    str(config.path),
                    config.episode_matcher,
                    config.player_args_text(),
                ),
            )
            conn.execute(
                _UPSERT_INFO,
                (
                    info.id,
                    info.title_preferred,
                    info.title_romaji,
                    info.episodes,
                    info.episode_length_mins,
                    info.sequel,
                ),
            )
            conn.execute(_UPSERT_ENTRY, (entry.id, *_entry_params(entry)))
        logger.debug("Saved series %d (%s)", config.id, config.nickname)

    def save_entry(self, entry: SeriesEntry) -> None:
        """Overwrite the entry row of an already saved series."""
        with self._transaction() as conn:
            cur = conn.execute(_UPDATE_ENTRY, (*_entry_params(entry), entry.id))
            if cur.rowcount == 0:
                raise UnknownSeriesError(f"no entry for series {entry.id}")

    def delete(self, nickname: str) -> None:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM series_configs WHERE nickname = ?", (nickname,))
            if cur.rowcount == 0:
                raise UnknownSeriesError(f"no series named {nickname!r}")
        logger.info("Deleted series %s", nickname)

    def entries_needing_sync(self) -> list[SeriesEntry]:
        rows = self._query("SELECT * FROM series_entries WHERE needs_sync = 1 ORDER BY insert_order")
        return [_row_to_entry(row) for row in rows]

    # ----------------------------
    # Remote reconciliation
    # ----------------------------

    def sync_to_remote(self, entry: SeriesEntry, remote: RemoteService) -> SeriesEntry:
        """
        Push entry to the remote list.

        On success the entry is stored with needs_sync cleared and returned.
        On RemoteError it's stored with needs_sync set and the error propagates.
        """
        try:
            remote.push_entry(entry.id, entry_fields(entry))
        except RemoteError:
            self.save_entry(replace(entry, needs_sync=True))
            raise

        synced = replace(entry, needs_sync=False)
        self.save_entry(synced)
        return synced

    def sync_from_remote(self, series_id: int, remote: RemoteService) -> SeriesEntry:
        """Replace the local entry with the remote one. No entry remotely means a fresh one."""
        self.load_entry(series_id)
        pulled = remote.fetch_entry(series_id)
        entry = replace(pulled, needs_sync=False) if pulled else SeriesEntry(id=series_id)
        self.save_entry(entry)
        return entry

    # ----------------------------
    # Split seasons
    # ----------------------------

    def season_record(self, series_id: int) -> SeasonRecord | None:
        rows = self._query("SELECT * FROM split_seasons WHERE id = ?", (series_id,))
        if not rows:
            return None
        row = rows[0]
        return SeasonRecord(
            id=row["id"],
            title=row["title"],
            episodes=row["episodes"],
            sequel=row["sequel"],
            confirmed=bool(row["confirmed"]),
        )

    def is_season_confirmed(self, info: SeriesInfo) -> bool:
        """True when info was confirmed before with the same episode count."""
        record = self.season_record(info.id)
        return record is not None and record.confirmed and record.episodes == info.episodes

    def confirm_season(self, info: SeriesInfo) -> SeasonRecord:
        record = SeasonRecord(
            id=info.id,
            title=info.title_preferred,
            episodes=info.episodes,
            sequel=info.sequel,
            confirmed=True,
        )
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO split_seasons (id, title, episodes, sequel, confirmed)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    episodes = excluded.episodes,
                    sequel = excluded.sequel,
                    confirmed = 1
                """,
                (record.id, record.title, record.episodes, record.sequel),
            )
        return record
