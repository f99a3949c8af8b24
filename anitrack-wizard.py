#!/usr/bin/env python3
"""
Interactive watch-progress tracker, driven by config.yaml.

Rich UI edition ✨

Key points:
- Series live in folders under series_dir; episode files are matched by name
- Progress is stored locally (SQLite) and pushed to AniList in the background
- Works offline (--offline or remote.service: offline); changes stay flagged
  until the next successful sync
- Split merged-season folders into per-season symlink folders
"""

from __future__ import annotations

import argparse
import logging
import os
import shlex
import sys
from datetime import datetime
from pathlib import Path

try:
    from rich import box
    from rich.console import Console
    from rich.panel import Panel
    from rich.prompt import Confirm, Prompt
    from rich.table import Table
    from rich.theme import Theme
    from rich.traceback import install as install_rich_traceback

    install_rich_traceback(show_locals=False)
except ImportError as e:
    print("❌ rich is not installed. Install it with:\n   pip install rich")
    raise SystemExit(1) from e

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory

from list_remote import AniListRemote, OfflineRemote, RemoteService
from season_splitter import NameFormat
from series_cache import SeriesCache
from series_data import SeriesData, SeriesInfo
from series_tracker import Direction, SeriesTracker, SplitOutcome, UpdateResult
from sync_worker import SyncCoordinator, SyncResult, SyncWorker
from tracker_config import TrackerCfg, expand_path, load_or_create_config
from tracker_errors import (
    ConfigError,
    FatalMigrationError,
    PatternMismatch,
    StorageError,
    StorageLockedError,
    TrackerError,
)
from watch_status import STATUS_LABELS, Status

DEFAULT_CONFIG = Path.home() / ".config" / "anitrack" / "config.yaml"

# prompt_toolkit needs a real terminal; tests and pipes fall back to rich prompts
USE_PROMPT_TOOLKIT = sys.stdin.isatty()
_path_history = InMemoryHistory()

THEME = Theme(
    {
        "title": "bold cyan",
        "accent": "cyan",
        "info": "bright_cyan",
        "ok": "bold green",
        "warn": "bold yellow",
        "err": "bold red",
        "dim": "dim",
        "path": "bright_white",
    }
)
console = Console(theme=THEME, highlight=False)


# ----------------------------
# Logging
# ----------------------------


def setup_logging(log_dir: Path, debug: bool = False) -> Path | None:
    """Set up file logging. Console output goes through rich.

    Returns the log file path if successful, None otherwise.
    """
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"anitrack_{timestamp}.log"

        logging.basicConfig(
            level=logging.DEBUG if debug else logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file)],
        )
        return log_file
    except OSError:
        return None


def ok(msg: str) -> None:
    console.print(f"[ok]✅ {msg}[/]")
    logging.info(msg)


def warn(msg: str) -> None:
    console.print(f"[warn]⚠ {msg}[/]")
    logging.warning(msg)


def error(msg: str) -> None:
    console.print(f"[err]❌ {msg}[/]")
    logging.error(msg)


# ----------------------------
# Prompts
# ----------------------------


def _clean_user_path(s: str) -> str:
    """
    Clean up user input from interactive prompts:
    - trims whitespace
    - strips one pair of matching surrounding quotes ('...' or "...")
    - expands ~ and $VARS
    """
    s = (s or "").strip()
    if not s:
        return s

    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        s = s[1:-1].strip()

    return expand_path(s)


def ask_path(prompt: str, default: str = "") -> str:
    """Ask for a path, with ↑/↓ history via prompt_toolkit on a terminal."""
    if USE_PROMPT_TOOLKIT:
        session: PromptSession[str] = PromptSession(history=_path_history)
        raw = session.prompt(f"{prompt}: ", default=default)
    else:
        raw = Prompt.ask(prompt, default=default)
    return _clean_user_path(raw)


def choose_action() -> str:
    panel = Panel(
        "[cyan][1][/] List series\n"
        "[cyan][2][/] Watched the next episode   [dim](+1)[/]\n"
        "[cyan][3][/] Step back an episode       [dim](-1)[/]\n"
        "[cyan][4][/] Rate a series              [dim](0-100)[/]\n"
        "[cyan][5][/] Set status\n"
        "[cyan][6][/] Start a rewatch\n"
        "[cyan][7][/] Add a series\n"
        "[cyan][8][/] Edit a series              [dim](path / pattern)[/]\n"
        "[cyan][9][/] Sync with AniList\n"
        "[cyan][s][/] Split merged seasons\n"
        "[cyan][d][/] Delete a series\n"
        "[cyan][q][/] Quit",
        title="🧰 Action",
        border_style="cyan",
        box=box.ROUNDED,
    )
    console.print(panel)

    actions = {
        "1": "list",
        "2": "next",
        "3": "back",
        "4": "rate",
        "5": "status",
        "6": "rewatch",
        "7": "add",
        "8": "edit",
        "9": "sync",
        "s": "split",
        "d": "delete",
        "q": "quit",
    }
    choice = Prompt.ask("Choose", choices=list(actions), default="2")
    return actions[choice]


def render_series_table(series: list[SeriesData]) -> None:
    table = Table(title="📺 Series", box=box.SIMPLE_HEAD)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Nickname", style="bold")
    table.add_column("Title")
    table.add_column("Progress", justify="right")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Sync", justify="center")

    for i, s in enumerate(series, 1):
        total = s.info.episodes or "?"
        table.add_row(
            str(i),
            s.nickname,
            s.info.title_preferred,
            f"{s.entry.watched_episodes}/{total}",
            str(s.entry.status),
            str(s.entry.score) if s.entry.score is not None else "-",
            "[warn]●[/]" if s.entry.needs_sync else "[dim]✓[/]",
        )
    console.print(table)


def pick_series(tracker: SeriesTracker) -> str | None:
    series = tracker.list_series()
    if not series:
        warn("No series tracked yet. Add one first.")
        return None

    render_series_table(series)
    choice = Prompt.ask(f"Series [cyan][1-{len(series)} or nickname][/]", default="1").strip()
    if choice.isdigit():
        idx = int(choice)
        if 1 <= idx <= len(series):
            return series[idx - 1].nickname
    for s in series:
        if s.nickname == choice:
            return s.nickname
    warn(f"'{choice}' isn't a tracked series.")
    return None


def pick_status() -> Status:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("idx", style="cyan")
    table.add_column("name")
    for status in Status:
        table.add_row(f"[{status.value + 1}]", STATUS_LABELS[status])
    console.print(table)

    choice = Prompt.ask("Status", choices=[str(s.value + 1) for s in Status], default="1")
    return Status(int(choice) - 1)


def confirm_season(info: SeriesInfo) -> bool:
    return Confirm.ask(
        f"Is [bold]{info.title_preferred}[/] ({info.episodes} episodes) the right season?",
        default=True,
    )


# ----------------------------
# Output
# ----------------------------


def show_update(result: UpdateResult) -> None:
    if result.queued:
        console.print(f"[info]⏳ {result.nickname}: a sync is running, change queued.[/]")
        return
    entry = result.entry
    if entry is not None:
        console.print(
            f"[accent]{result.nickname}[/]: {entry.watched_episodes} watched, "
            f"{entry.status}, score {entry.score if entry.score is not None else '-'}"
        )
    if result.sync_error:
        warn(f"{result.nickname}: sync failed, will retry later ({result.sync_error})")
    elif result.sync_started:
        console.print("[dim]↻ syncing in the background…[/]")


def show_sync_results(results: list[SyncResult]) -> None:
    for r in results:
        if r.ok:
            console.print(f"[dim]✓ {r.kind.value} of series {r.series_id} done[/]")
        else:
            warn(f"{r.kind.value} of series {r.series_id} failed: {r.message}")


def show_split(outcome: SplitOutcome) -> None:
    table = Table(title="✂ Split", box=box.SIMPLE_HEAD)
    table.add_column("Season")
    table.add_column("Episodes", justify="right")
    table.add_column("Raw range")
    for season in outcome.plan.seasons:
        first = season.offset + 1
        last = season.offset + season.info.episodes
        table.add_row(season.dir_name, str(len(season.links)), f"{first}-{last}")
    console.print(table)

    counts = ", ".join(f"{k}={v}" for k, v in sorted(outcome.report.counts.items())) or "nothing to do"
    console.print(f"[dim]{counts}[/]")
    for folder in outcome.report.in_place:
        console.print(f"[dim]{folder.name} already holds its episodes, left in place.[/]")
    for group in outcome.plan.others:
        console.print(f"[info]{group.title}: {len(group.files)} file(s) linked into their own folder.[/]")
    if outcome.plan.stopped_at is not None:
        warn(f"Stopped at {outcome.plan.stopped_at.title_preferred}; later seasons weren't split.")
    if outcome.plan.unassigned:
        warn(f"{len(outcome.plan.unassigned)} file(s) didn't fit any season.")


def render_header(cfg: TrackerCfg, remote: RemoteService, log_file: Path | None) -> None:
    """Render a stylish startup header using Rich."""
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("key", style="cyan")
    table.add_column("val")
    table.add_row("Series dir", str(cfg.series_dir))
    table.add_row("Database", str(cfg.database_path))
    table.add_row("Remote", "[warn]offline[/]" if remote.is_offline else cfg.remote.service)
    table.add_row("Dropped", cfg.dropped_policy.value)
    table.add_row("Log", str(log_file) if log_file else "[dim]disabled[/]")

    console.rule("[title]anitrack[/]")
    console.print(Panel(table, title="🧙 Config", border_style="magenta", box=box.ROUNDED))


# ----------------------------
# Actions
# ----------------------------


def do_add(tracker: SeriesTracker) -> None:
    nickname = Prompt.ask("Nickname").strip()
    raw_path = ask_path("📂 Series folder (blank: find by nickname)")
    raw_id = Prompt.ask("AniList id (blank: search by title)", default="").strip()
    matcher = Prompt.ask("Episode pattern (blank: built-in)", default="").strip()

    try:
        result = tracker.add(
            nickname,
            series_id=int(raw_id) if raw_id.isdigit() else None,
            path=Path(raw_path) if raw_path else None,
            matcher=matcher or None,
        )
    except PatternMismatch as e:
        error(str(e))
        console.print("[dim]Tip: set a custom pattern like '[*] Title - #'.[/]")
        return

    info = result.series.info
    ok(f"Added {info.title_preferred} ({info.episodes or '?'} episodes) as {result.series.nickname}")
    if result.warning:
        warn(result.warning)


def do_edit(tracker: SeriesTracker, nickname: str) -> None:
    series = tracker.get(nickname)
    raw_path = ask_path("📂 New folder (blank: keep)")
    matcher = Prompt.ask(
        "Episode pattern ('-' clears it)", default=series.config.episode_matcher or ""
    ).strip()
    raw_args = Prompt.ask("Player args", default=" ".join(series.config.player_args)).strip()

    updated = tracker.set(
        nickname,
        path=Path(raw_path) if raw_path else None,
        matcher=None if matcher in ("", "-") else matcher,
        player_args=tuple(shlex.split(raw_args)),
    )
    ok(f"Updated {updated.nickname} → {tracker.series_path(updated)}")


def do_sync(tracker: SeriesTracker) -> None:
    choice = Prompt.ask(
        "Sync [cyan][a][/]ll pending, [cyan][p][/]ush one, pu[cyan][l][/]l one, refresh [cyan][i][/]nfo",
        choices=["a", "p", "l", "i"],
        default="a",
    )
    if choice == "a":
        results = tracker.sync_all()
        if not results:
            ok("Nothing to sync.")
        for r in results:
            show_update(r)
        return

    nickname = pick_series(tracker)
    if nickname is None:
        return
    if choice == "p":
        show_update(tracker.sync_to_remote(nickname))
    elif choice == "i":
        info = tracker.refresh_info(nickname).info
        ok(f"{info.title_preferred}: {info.episodes or '?'} episodes, {info.episode_length_mins} min each")
    elif Confirm.ask("Overwrite local progress with AniList's?", default=False):
        show_update(tracker.sync_from_remote(nickname))


def do_split(tracker: SeriesTracker) -> None:
    directory = ask_path("📂 Merged folder")
    if not directory:
        error("No path provided.")
        return
    raw_id = Prompt.ask("AniList id of the first season (blank: search)", default="").strip()
    raw_out = ask_path("📁 Output folder (blank: next to it)")
    fmt = Prompt.ask("Name format", default="{title} - {episode}{ext}")
    dry_run = Confirm.ask("Dry run?", default=False)

    outcome = tracker.split(
        Path(directory),
        confirm=confirm_season,
        series_id=int(raw_id) if raw_id.isdigit() else None,
        out_dir=Path(raw_out) if raw_out else None,
        name_format=NameFormat(fmt),
        dry_run=dry_run,
    )
    show_split(outcome)


def run_action(tracker: SeriesTracker, action: str) -> None:
    if action == "list":
        series = tracker.list_series()
        if series:
            render_series_table(series)
        else:
            warn("No series tracked yet.")
        return
    if action == "add":
        do_add(tracker)
        return
    if action == "sync":
        do_sync(tracker)
        return
    if action == "split":
        do_split(tracker)
        return

    nickname = pick_series(tracker)
    if nickname is None:
        return

    auto_sync = not tracker.remote.is_offline

    if action == "next":
        try:
            number, path = tracker.next_episode(nickname)
        except TrackerError as e:
            warn(f"Couldn't look up the episode file: {e}")
        else:
            if path is not None:
                console.print(f"[dim]Episode {number}: {path.name}[/]")
        show_update(tracker.advance(nickname, Direction.FORWARD, sync=auto_sync))
    elif action == "back":
        show_update(tracker.advance(nickname, Direction.BACKWARD, sync=auto_sync))
    elif action == "rate":
        raw = Prompt.ask("Score 0-100 (blank clears)", default="").strip()
        score = int(raw) if raw else None
        show_update(tracker.rate(nickname, score, sync=auto_sync))
    elif action == "status":
        show_update(tracker.set_status(nickname, pick_status(), sync=auto_sync))
    elif action == "rewatch":
        show_update(tracker.begin_rewatch(nickname, sync=auto_sync))
    elif action == "edit":
        do_edit(tracker, nickname)
    elif action == "delete":
        if Confirm.ask(f"Delete [bold]{nickname}[/] and its progress?", default=False):
            tracker.delete(nickname)
            ok(f"Deleted {nickname}")


# ----------------------------
# Main
# ----------------------------


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser()
    ap.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG),
        help=f"Path to config.yaml (default: {DEFAULT_CONFIG}; created if missing)",
    )
    ap.add_argument("--offline", action="store_true", help="Don't talk to AniList this session")
    ap.add_argument("--debug", action="store_true", help="Debug level file logging")
    return ap.parse_args()


def build_remote(cfg: TrackerCfg, offline: bool) -> RemoteService:
    if offline or cfg.remote.service == "offline":
        return OfflineRemote()
    return AniListRemote(cfg.remote.token, timeout=cfg.remote.timeout)


def main() -> int:
    args = parse_args()

    try:
        cfg = load_or_create_config(Path(os.path.expanduser(args.config)))
    except (ConfigError, OSError) as e:
        error(f"Config error: {e}")
        return 1

    log_file = setup_logging(cfg.log_dir, debug=getattr(args, "debug", False))

    try:
        cache = SeriesCache.open(cfg.database_path)
    except StorageLockedError:
        error(f"{cfg.database_path} is in use by another anitrack instance.")
        return 1
    except FatalMigrationError as e:
        error(f"Database upgrade failed, not continuing: {e}")
        return 1
    except StorageError as e:
        error(str(e))
        return 1

    remote = build_remote(cfg, args.offline)
    coordinator = SyncCoordinator(cache, SyncWorker(remote))
    tracker = SeriesTracker(cfg, cache, remote, coordinator)

    render_header(cfg, remote, log_file)

    try:
        while True:
            console.print()  # breathing room
            show_sync_results(tracker.drain_sync())

            action = choose_action()
            if action == "quit":
                break

            try:
                run_action(tracker, action)
            except TrackerError as e:
                error(str(e))
            except ValueError as e:
                error(f"Invalid input: {e}")
            except OSError as e:
                error(f"Filesystem error: {e}")

            show_sync_results(tracker.drain_sync())
            console.rule(style="dim")

        console.print("[dim]👋 Bye.[/]")
    except (KeyboardInterrupt, EOFError):
        console.print("\n[dim]⏹ Interrupted. Bye.[/]")
    finally:
        # Whatever is still in flight keeps needs_sync and retries next run
        show_sync_results(tracker.drain_sync(timeout=5.0))
        coordinator.shutdown(wait=False)
        cache.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
