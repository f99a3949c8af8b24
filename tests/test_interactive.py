"""Tests for interactive prompts and pickers.
"""

from pathlib import Path
from types import ModuleType
from typing import Any

import pytest  # type: ignore[import-untyped]

from series_tracker import SeriesTracker, UpdateResult
from watch_status import SeriesEntry, Status


@pytest.fixture(autouse=True)
def _no_prompt_toolkit(anitrack_wizard: ModuleType, monkeypatch: Any) -> None:
    monkeypatch.setattr(anitrack_wizard, "USE_PROMPT_TOOLKIT", False)


def test_choose_action_prompts(anitrack_wizard: ModuleType, monkeypatch: Any) -> None:
    expected = {"1": "list", "2": "next", "3": "back", "4": "rate", "7": "add", "s": "split", "q": "quit"}
    for key, action in expected.items():
        monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, _k=key, **k: _k)
        assert anitrack_wizard.choose_action() == action


def test_ask_path_strips_quotes(anitrack_wizard: ModuleType, monkeypatch: Any) -> None:
    # simulate Prompt.ask returning a quoted path
    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "  '/tmp/anime'  ")
    assert anitrack_wizard.ask_path("Prompt") == "/tmp/anime"

    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "  ")
    assert anitrack_wizard.ask_path("Prompt") == ""


def test_clean_user_path_expands(anitrack_wizard: ModuleType, monkeypatch: Any) -> None:
    monkeypatch.setenv("ANIME_ROOT", "/srv/anime")
    assert anitrack_wizard._clean_user_path('"$ANIME_ROOT/Frieren"') == "/srv/anime/Frieren"
    assert anitrack_wizard._clean_user_path("~/x") == str(Path.home() / "x")


def test_pick_series_by_index_and_nickname(
    anitrack_wizard: ModuleType, monkeypatch: Any, tracker_cfg, cache, fake_remote, saved_series
) -> None:
    tracker = SeriesTracker(tracker_cfg, cache, fake_remote)

    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "1")
    assert anitrack_wizard.pick_series(tracker) == "frieren"

    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "frieren")
    assert anitrack_wizard.pick_series(tracker) == "frieren"

    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "7")
    assert anitrack_wizard.pick_series(tracker) is None


def test_pick_series_empty(
    anitrack_wizard: ModuleType, monkeypatch: Any, tracker_cfg, cache, fake_remote
) -> None:
    def fail(*a, **k):
        raise AssertionError("shouldn't prompt")

    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", fail)
    assert anitrack_wizard.pick_series(SeriesTracker(tracker_cfg, cache, fake_remote)) is None


def test_pick_status(anitrack_wizard: ModuleType, monkeypatch: Any) -> None:
    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "3")
    assert anitrack_wizard.pick_status() == Status.ON_HOLD

    monkeypatch.setattr(anitrack_wizard.Prompt, "ask", lambda prompt, **k: "6")
    assert anitrack_wizard.pick_status() == Status.REWATCHING


def test_confirm_season(anitrack_wizard: ModuleType, monkeypatch: Any, saved_series) -> None:
    _, info, _ = saved_series
    monkeypatch.setattr(anitrack_wizard.Confirm, "ask", lambda *a, **k: False)
    assert anitrack_wizard.confirm_season(info) is False

    monkeypatch.setattr(anitrack_wizard.Confirm, "ask", lambda *a, **k: True)
    assert anitrack_wizard.confirm_season(info) is True


def test_show_update_does_not_raise(anitrack_wizard: ModuleType) -> None:
    entry = SeriesEntry(id=1, watched_episodes=3, status=Status.WATCHING)
    anitrack_wizard.show_update(UpdateResult("x", entry))
    anitrack_wizard.show_update(UpdateResult("x", None, queued=True))
    anitrack_wizard.show_update(UpdateResult("x", entry, sync_error="offline"))


def test_setup_logging_creates_file(anitrack_wizard: ModuleType, tmp_path: Path) -> None:
    log_file = anitrack_wizard.setup_logging(tmp_path / "logs")
    assert log_file is not None
    assert log_file.parent == tmp_path / "logs"
    assert log_file.name.startswith("anitrack_")
