"""
Pytest configuration and fixtures for anitrack tests.
"""

import importlib.util
import os
import sys
import threading
from pathlib import Path
from types import ModuleType

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from series_cache import SeriesCache  # noqa: E402
from series_data import SeriesConfig, SeriesInfo  # noqa: E402
from tracker_config import TrackerCfg  # noqa: E402
from tracker_errors import RemoteError  # noqa: E402
from watch_status import SeriesEntry  # noqa: E402


def _load_anitrack_wizard() -> ModuleType:
    """Load the anitrack-wizard module dynamically (handles hyphen in filename)."""
    module_path = os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "anitrack-wizard.py"
    )
    spec = importlib.util.spec_from_file_location("anitrack_wizard", module_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load module from {module_path}")
    module = importlib.util.module_from_spec(spec)
    # Register in sys.modules BEFORE exec_module to fix dataclass resolution
    sys.modules["anitrack_wizard"] = module
    spec.loader.exec_module(module)
    return module


# Load module once at import time and make it available globally
_module = _load_anitrack_wizard()


@pytest.fixture
def anitrack_wizard():
    """Fixture providing access to the anitrack_wizard module."""
    return _module


class FakeRemote:
    """In-memory list service. Set fail_push / fail_pull to simulate outages."""

    is_offline = False

    def __init__(self) -> None:
        self.infos: dict[int, SeriesInfo] = {}
        self.entries: dict[int, SeriesEntry] = {}
        self.pushed: list[tuple[int, dict]] = []
        self.fail_push = False
        self.fail_pull = False
        # When set, push/pull block until the event is set (keeps a sync "in flight")
        self.gate: threading.Event | None = None

    def add_info(self, info: SeriesInfo) -> SeriesInfo:
        self.infos[info.id] = info
        return info

    def _wait(self) -> None:
        if self.gate is not None:
            self.gate.wait(timeout=5)

    def fetch_series_info(self, series_id: int) -> SeriesInfo:
        if series_id not in self.infos:
            raise RemoteError(f"no series with id {series_id}", status_code=404)
        return self.infos[series_id]

    def fetch_entry(self, series_id: int) -> SeriesEntry | None:
        self._wait()
        if self.fail_pull:
            raise RemoteError("pull failed")
        return self.entries.get(series_id)

    def push_entry(self, series_id: int, fields) -> None:
        self._wait()
        if self.fail_push:
            raise RemoteError("push failed")
        self.pushed.append((series_id, dict(fields)))

    def search_series(self, query: str) -> list[SeriesInfo]:
        q = query.lower()
        hits = [i for i in self.infos.values() if q in i.title_preferred.lower()]
        return hits or list(self.infos.values())


def write_episodes(directory: Path, names: list[str]) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(b"")
    return directory


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def cache(tmp_path):
    c = SeriesCache.open(tmp_path / "data" / "data.sqlite")
    yield c
    c.close()


@pytest.fixture
def tracker_cfg(tmp_path) -> TrackerCfg:
    series_dir = tmp_path / "anime"
    series_dir.mkdir()
    return TrackerCfg(
        series_dir=series_dir,
        database_path=tmp_path / "data" / "data.sqlite",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def saved_series(cache):
    """A 12 episode series already in the cache, returned as (config, info, entry)."""
    config = SeriesConfig(id=21, nickname="frieren", path=Path("Frieren"))
    info = SeriesInfo(
        id=21,
        title_preferred="Frieren",
        title_romaji="Sousou no Frieren",
        episodes=12,
        episode_length_mins=24,
    )
    entry = SeriesEntry(id=21)
    cache.save(config, info, entry)
    return config, info, entry


@pytest.fixture
def make_episodes():
    """Factory: make_episodes(directory, [names]) creates empty episode files."""
    return write_episodes
