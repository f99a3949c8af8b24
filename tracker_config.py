"""
config.yaml loading for anitrack.

Example:

    series_dir: ~/anime
    database_path: ~/.local/share/anitrack/data.sqlite
    reset_dates_on_rewatch: false
    dropped_policy: resume        # resume|restart
    log_dir: ~/.local/share/anitrack/logs

    remote:
      service: anilist            # anilist|offline
      token: ""                   # or set ANITRACK_TOKEN
      timeout: 10
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

import yaml

from tracker_errors import ConfigError
from watch_status import DroppedPolicy

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "anitrack"
TOKEN_ENV_VAR = "ANITRACK_TOKEN"


def _coerce_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, int | float):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("true", "yes", "y", "1", "on", "enabled"):
            return True
        if s in ("false", "no", "n", "0", "off", "disabled"):
            return False
    return default


def expand_path(p: str) -> str:
    """Expand ~ and $VARS and return a normalized path string (doesn't require existence)."""
    p = (p or "").strip()
    if not p:
        return p
    p = os.path.expandvars(p)
    return str(Path(p).expanduser())


@dataclass(frozen=True)
class RemoteCfg:
    service: str = "anilist"  # anilist|offline
    token: str | None = None
    timeout: float = 10.0


@dataclass(frozen=True)
class TrackerCfg:
    series_dir: Path
    database_path: Path
    log_dir: Path
    reset_dates_on_rewatch: bool = False
    dropped_policy: DroppedPolicy = DroppedPolicy.RESUME
    remote: RemoteCfg = field(default_factory=RemoteCfg)

    def stripped_path(self, path: Path) -> Path:
        """Store paths under series_dir relative to it."""
        try:
            return path.relative_to(self.series_dir)
        except ValueError:
            return path

    def absolute_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return self.series_dir / path


def default_config() -> TrackerCfg:
    return TrackerCfg(
        series_dir=Path.home() / "anime",
        database_path=DEFAULT_DATA_DIR / "data.sqlite",
        log_dir=DEFAULT_DATA_DIR / "logs",
    )


def _parse_timeout(v: Any) -> float:
    try:
        timeout = float(v)
    except (TypeError, ValueError):
        raise ConfigError(f"remote.timeout must be a number, got {v!r}") from None
    if timeout <= 0:
        raise ConfigError(f"remote.timeout must be positive, got {timeout}")
    return timeout


def load_config(path: Path) -> TrackerCfg:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    if loaded is None:
        raw: dict[str, Any] = {}
    elif not isinstance(loaded, dict):
        raise ConfigError("config.yaml root must be a mapping")
    else:
        raw = cast(dict[str, Any], loaded)

    defaults = default_config()

    series_dir = Path(expand_path(str(raw.get("series_dir") or defaults.series_dir)))
    database_path = Path(expand_path(str(raw.get("database_path") or defaults.database_path)))
    log_dir = Path(expand_path(str(raw.get("log_dir") or defaults.log_dir)))

    policy_raw = str(raw.get("dropped_policy", DroppedPolicy.RESUME.value)).strip().lower()
    try:
        dropped_policy = DroppedPolicy(policy_raw)
    except ValueError:
        raise ConfigError("dropped_policy must be one of: resume, restart") from None

    remote_node: dict[str, Any] = cast(dict[str, Any], raw.get("remote") or {})
    service = str(remote_node.get("service", "anilist")).strip().lower()
    if service not in ("anilist", "offline"):
        raise ConfigError("remote.service must be one of: anilist, offline")
    token = remote_node.get("token") or os.environ.get(TOKEN_ENV_VAR)
    remote = RemoteCfg(
        service=service,
        token=str(token).strip() if token else None,
        timeout=_parse_timeout(remote_node.get("timeout", 10)),
    )

    return TrackerCfg(
        series_dir=series_dir,
        database_path=database_path,
        log_dir=log_dir,
        reset_dates_on_rewatch=_coerce_bool(raw.get("reset_dates_on_rewatch", False), False),
        dropped_policy=dropped_policy,
        remote=remote,
    )


def save_config(cfg: TrackerCfg, path: Path) -> None:
    data = {
        "series_dir": str(cfg.series_dir),
        "database_path": str(cfg.database_path),
        "log_dir": str(cfg.log_dir),
        "reset_dates_on_rewatch": cfg.reset_dates_on_rewatch,
        "dropped_policy": cfg.dropped_policy.value,
        "remote": {
            "service": cfg.remote.service,
            "timeout": cfg.remote.timeout,
        },
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


def load_or_create_config(path: Path) -> TrackerCfg:
    """Load config.yaml, writing the defaults first when it doesn't exist yet."""
    if not path.exists():
        save_config(default_config(), path)
    return load_config(path)
