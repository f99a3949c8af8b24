"""Records describing a tracked series: where it lives and what the list service knows about it."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from watch_status import SeriesEntry

PLAYER_ARGS_SEP = ";;"


@dataclass(frozen=True)
class SeriesConfig:
    id: int
    nickname: str
    path: Path  # relative to series_dir when it lives under it
    episode_matcher: str | None = None  # None -> built-in patterns
    player_args: tuple[str, ...] = field(default_factory=tuple)

    def player_args_text(self) -> str | None:
        if not self.player_args:
            return None
        return PLAYER_ARGS_SEP.join(self.player_args)

    @staticmethod
    def parse_player_args(text: str | None) -> tuple[str, ...]:
        if not text:
            return ()
        return tuple(a for a in text.split(PLAYER_ARGS_SEP) if a)


@dataclass(frozen=True)
class SeriesInfo:
    id: int
    title_preferred: str
    title_romaji: str
    episodes: int  # 0 when the service doesn't know yet
    episode_length_mins: int
    sequel: int | None = None


@dataclass(frozen=True)
class SeriesData:
    config: SeriesConfig
    info: SeriesInfo
    entry: SeriesEntry

    @property
    def id(self) -> int:
        return self.config.id

    @property
    def nickname(self) -> str:
        return self.config.nickname


@dataclass(frozen=True)
class SeasonRecord:
    """A season the splitter has seen. The episode count is trusted once confirmed."""

    id: int
    title: str
    episodes: int
    sequel: int | None = None
    confirmed: bool = False
