"""Tests for anitrack configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest  # type: ignore[import-untyped]
import yaml

from tracker_config import (
    TOKEN_ENV_VAR,
    RemoteCfg,
    TrackerCfg,
    _coerce_bool,
    expand_path,
    load_config,
    load_or_create_config,
    save_config,
)
from tracker_errors import ConfigError
from watch_status import DroppedPolicy


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")
    return path


class TestLoadConfig:
    """Tests for load_config function."""

    def test_missing_config_raises(self) -> None:
        """Missing config file should raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(Path("/nonexistent/config.yaml"))

    def test_empty_config_uses_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """An empty file falls back to every default."""
        monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
        cfg = load_config(_write(tmp_path, ""))

        assert cfg.series_dir == Path.home() / "anime"
        assert cfg.reset_dates_on_rewatch is False
        assert cfg.dropped_policy == DroppedPolicy.RESUME
        assert cfg.remote == RemoteCfg()

    def test_full_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Full config should load all values."""
        monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
        path = _write(
            tmp_path,
            """
series_dir: /srv/anime
database_path: /srv/anitrack/data.sqlite
log_dir: /srv/anitrack/logs
reset_dates_on_rewatch: yes
dropped_policy: restart

remote:
  service: offline
  token: abc
  timeout: 3
""",
        )
        cfg = load_config(path)

        assert cfg.series_dir == Path("/srv/anime")
        assert cfg.database_path == Path("/srv/anitrack/data.sqlite")
        assert cfg.log_dir == Path("/srv/anitrack/logs")
        assert cfg.reset_dates_on_rewatch is True
        assert cfg.dropped_policy == DroppedPolicy.RESTART
        assert cfg.remote == RemoteCfg(service="offline", token="abc", timeout=3.0)

    def test_token_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """ANITRACK_TOKEN is used when the file has no token."""
        monkeypatch.setenv(TOKEN_ENV_VAR, " env-token ")
        cfg = load_config(_write(tmp_path, "remote:\n  service: anilist\n"))
        assert cfg.remote.token == "env-token"

    def test_path_expansion(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """$VARS in paths are expanded."""
        monkeypatch.setenv("ANIME_ROOT", "/data/anime")
        cfg = load_config(_write(tmp_path, "series_dir: $ANIME_ROOT/tv\n"))
        assert cfg.series_dir == Path("/data/anime/tv")

    @pytest.mark.parametrize(
        "content",
        [
            "dropped_policy: forget\n",
            "remote:\n  service: myanimelist\n",
            "remote:\n  timeout: soon\n",
            "remote:\n  timeout: 0\n",
            "- just\n- a list\n",
        ],
    )
    def test_invalid_values(self, tmp_path: Path, content: str) -> None:
        """Bad values raise ConfigError."""
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, content))

    def test_config_error_is_value_error(self) -> None:
        assert issubclass(ConfigError, ValueError)


class TestSaveConfig:
    def test_round_trip_without_token(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """The token never gets written back to disk."""
        monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
        cfg = TrackerCfg(
            series_dir=tmp_path / "anime",
            database_path=tmp_path / "data.sqlite",
            log_dir=tmp_path / "logs",
            dropped_policy=DroppedPolicy.RESTART,
            remote=RemoteCfg(service="anilist", token="secret", timeout=5.0),
        )
        path = tmp_path / "out" / "config.yaml"
        save_config(cfg, path)

        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert "token" not in raw["remote"]

        loaded = load_config(path)
        assert loaded.remote.token is None
        assert loaded.remote.timeout == 5.0
        assert loaded.dropped_policy == DroppedPolicy.RESTART
        assert loaded.series_dir == cfg.series_dir

    def test_load_or_create_writes_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "new" / "config.yaml"
        cfg = load_or_create_config(path)
        assert path.exists()
        assert cfg.dropped_policy == DroppedPolicy.RESUME


class TestPaths:
    def test_stripped_and_absolute(self, tmp_path: Path) -> None:
        cfg = TrackerCfg(
            series_dir=tmp_path / "anime",
            database_path=tmp_path / "db",
            log_dir=tmp_path / "logs",
        )
        inside = tmp_path / "anime" / "Frieren"
        assert cfg.stripped_path(inside) == Path("Frieren")
        assert cfg.absolute_path(Path("Frieren")) == inside
        outside = Path("/mnt/other/Show")
        assert cfg.stripped_path(outside) == outside
        assert cfg.absolute_path(outside) == outside

    def test_expand_path_blank(self) -> None:
        assert expand_path("  ") == ""

    @pytest.mark.parametrize(
        "value, expected",
        [(True, True), ("yes", True), ("off", False), (0, False), ("maybe", None)],
    )
    def test_coerce_bool(self, value, expected) -> None:
        default = object()
        result = _coerce_bool(value, default)  # type: ignore[arg-type]
        assert result is (default if expected is None else expected)
