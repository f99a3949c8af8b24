"""
Watch progress for a single series and the rules that move it between states.

Every function here is a pure transform: it takes a SeriesEntry and returns a
new one. Persisting the result is the caller's job (see series_cache.py).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from enum import Enum, IntEnum

from tracker_errors import InvalidScoreError, InvalidTransition


class Status(IntEnum):
    # Values are the codes stored in series_entries.status
    WATCHING = 0
    COMPLETED = 1
    ON_HOLD = 2
    DROPPED = 3
    PLAN_TO_WATCH = 4
    REWATCHING = 5

    def __str__(self) -> str:
        return STATUS_LABELS[self]


STATUS_LABELS = {
    Status.WATCHING: "Watching",
    Status.COMPLETED: "Completed",
    Status.ON_HOLD: "On Hold",
    Status.DROPPED: "Dropped",
    Status.PLAN_TO_WATCH: "Plan To Watch",
    Status.REWATCHING: "Rewatching",
}

# Names accepted by set_status / the wizard's status prompt
STATUS_ALIASES = {
    "watching": Status.WATCHING,
    "watch": Status.WATCHING,
    "completed": Status.COMPLETED,
    "complete": Status.COMPLETED,
    "hold": Status.ON_HOLD,
    "on hold": Status.ON_HOLD,
    "onhold": Status.ON_HOLD,
    "drop": Status.DROPPED,
    "dropped": Status.DROPPED,
    "plan": Status.PLAN_TO_WATCH,
    "plan to watch": Status.PLAN_TO_WATCH,
    "plantowatch": Status.PLAN_TO_WATCH,
    "rewatch": Status.REWATCHING,
    "rewatching": Status.REWATCHING,
}


class DroppedPolicy(str, Enum):
    """What advancing a dropped series does to its progress."""

    RESUME = "resume"  # keep the stored count and add the episode just watched
    RESTART = "restart"  # start over; the episode just watched becomes episode 1


@dataclass(frozen=True)
class SeriesEntry:
    id: int
    watched_episodes: int = 0
    score: int | None = None
    status: Status = Status.PLAN_TO_WATCH
    times_rewatched: int = 0
    start_date: date | None = None
    finish_date: date | None = None
    needs_sync: bool = False


def parse_status(value: str | int | Status) -> Status:
    """Resolve an alias, display label or stored code to a Status."""
    if isinstance(value, Status):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return Status(value)
        except ValueError:
            raise InvalidTransition(f"unknown status code: {value}") from None
    if isinstance(value, str):
        key = " ".join(value.strip().lower().replace("_", " ").split())
        if key in STATUS_ALIASES:
            return STATUS_ALIASES[key]
    raise InvalidTransition(f"unsupported status: {value!r}")


def _clamp(watched: int, total_episodes: int) -> int:
    watched = max(watched, 0)
    if total_episodes > 0:
        return min(watched, total_episodes)
    return watched


def advance_episode(
    entry: SeriesEntry,
    total_episodes: int,
    *,
    dropped_policy: DroppedPolicy = DroppedPolicy.RESUME,
    today: date | None = None,
) -> SeriesEntry:
    """Record one more watched episode and apply the status transitions.

    The rows run in a fixed order: first the ones that put the series back
    into Watching, then the completion checks. A one episode series therefore
    goes PlanToWatch -> Watching -> Completed in a single call.
    """
    today = today or date.today()
    previous = entry.watched_episodes
    new = replace(entry, watched_episodes=_clamp(previous + 1, total_episodes), needs_sync=True)

    if new.status == Status.PLAN_TO_WATCH:
        new = replace(new, status=Status.WATCHING, start_date=new.start_date or today)
    elif new.status == Status.ON_HOLD:
        new = replace(new, status=Status.WATCHING)
    elif new.status == Status.DROPPED:
        watched = new.watched_episodes
        if dropped_policy == DroppedPolicy.RESTART:
            watched = _clamp(1, total_episodes)
        new = replace(new, status=Status.WATCHING, watched_episodes=watched)

    finished = total_episodes > 0 and new.watched_episodes == total_episodes

    if new.status == Status.WATCHING and finished:
        new = replace(new, status=Status.COMPLETED, finish_date=new.finish_date or today)
    elif new.status == Status.REWATCHING and finished:
        new = replace(
            new,
            status=Status.COMPLETED,
            times_rewatched=new.times_rewatched + 1,
            finish_date=new.finish_date or today,
        )

    return new


def regress_episode(entry: SeriesEntry, *, today: date | None = None) -> SeriesEntry:
    """Step progress back by one episode.

    Landing in Watching sets start_date the same way set_status does.
    """
    if entry.status == Status.COMPLETED and entry.times_rewatched > 0:
        status = Status.REWATCHING
    elif entry.status == Status.REWATCHING:
        status = Status.REWATCHING
    else:
        status = Status.WATCHING

    new = replace(
        entry,
        watched_episodes=max(entry.watched_episodes - 1, 0),
        status=status,
        needs_sync=True,
    )
    if status == Status.WATCHING and new.start_date is None:
        new = replace(new, start_date=today or date.today())
    return new


def begin_rewatch(entry: SeriesEntry, reset_dates: bool) -> SeriesEntry:
    if entry.status != Status.COMPLETED:
        raise InvalidTransition(f"can only rewatch a completed series (status is {entry.status})")

    new = replace(entry, status=Status.REWATCHING, watched_episodes=0, needs_sync=True)
    if reset_dates:
        new = replace(new, start_date=None, finish_date=None)
    return new


def check_score(score: int | None) -> int | None:
    if score is not None:
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise InvalidScoreError(f"score must be between 0 and 100, got {score!r}")
    return score


def set_score(entry: SeriesEntry, score: int | None) -> SeriesEntry:
    return replace(entry, score=check_score(score), needs_sync=True)


def set_status(
    entry: SeriesEntry,
    target: str | int | Status,
    *,
    reset_dates: bool = False,
    today: date | None = None,
) -> SeriesEntry:
    """Explicit status override. Doesn't go through the advance_episode table.

    Watching and Rewatching set start_date when it's unset, Completed and
    Dropped set finish_date. With reset_dates, Completed -> Rewatching restarts
    start_date and Rewatching -> Completed restarts finish_date.
    """
    status = parse_status(target)
    today = today or date.today()
    previous = entry.status

    new = replace(entry, status=status, needs_sync=True)
    if status == Status.WATCHING and new.start_date is None:
        new = replace(new, start_date=today)
    elif status == Status.REWATCHING and (
        new.start_date is None or (previous == Status.COMPLETED and reset_dates)
    ):
        new = replace(new, start_date=today)
    elif status == Status.COMPLETED and (
        new.finish_date is None or (previous == Status.REWATCHING and reset_dates)
    ):
        new = replace(new, finish_date=today)
    elif status == Status.DROPPED and new.finish_date is None:
        new = replace(new, finish_date=today)
    return new
