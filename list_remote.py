"""
The remote list service: the contract the tracker needs, an AniList client and an offline stand-in.

Only four calls are used:
    fetch_series_info(id) -> SeriesInfo
    fetch_entry(id)       -> SeriesEntry | None   (None: not on the user's list)
    push_entry(id, fields)
    search_series(query)  -> list[SeriesInfo]
"""

from __future__ import annotations

import logging
import time
from datetime import date
from typing import Any, Protocol, TypedDict

import httpx

from series_data import SeriesInfo
from tracker_errors import RemoteError
from watch_status import SeriesEntry, Status

logger = logging.getLogger(__name__)

ANILIST_API_URL = "https://graphql.anilist.co"

# Retry settings
ANILIST_MAX_RETRIES = 3
ANILIST_RETRY_DELAY = 1.0  # seconds, will use exponential backoff


class EntryFields(TypedDict):
    watched_episodes: int
    score: int | None
    status: Status
    times_rewatched: int
    start_date: date | None
    finish_date: date | None


def entry_fields(entry: SeriesEntry) -> EntryFields:
    return {
        "watched_episodes": entry.watched_episodes,
        "score": entry.score,
        "status": entry.status,
        "times_rewatched": entry.times_rewatched,
        "start_date": entry.start_date,
        "finish_date": entry.finish_date,
    }


class RemoteService(Protocol):
    is_offline: bool

    def fetch_series_info(self, series_id: int) -> SeriesInfo: ...

    def fetch_entry(self, series_id: int) -> SeriesEntry | None: ...

    def push_entry(self, series_id: int, fields: EntryFields) -> None: ...

    def search_series(self, query: str) -> list[SeriesInfo]: ...


# ---------------------------------------------------------------------------
# Offline
# ---------------------------------------------------------------------------


class OfflineRemote:
    """Used when the service is unreachable or disabled. Every call fails with RemoteError."""

    is_offline = True

    def fetch_series_info(self, series_id: int) -> SeriesInfo:
        raise RemoteError("offline: series info must already be cached")

    def fetch_entry(self, series_id: int) -> SeriesEntry | None:
        raise RemoteError("offline: can't pull list entries")

    def push_entry(self, series_id: int, fields: EntryFields) -> None:
        raise RemoteError("offline: changes stay queued until the next sync")

    def search_series(self, query: str) -> list[SeriesInfo]:
        raise RemoteError("offline: can't search the list service")


# ---------------------------------------------------------------------------
# AniList
# ---------------------------------------------------------------------------

_MEDIA_FIELDS = """
    id
    episodes
    duration
    title { romaji userPreferred }
    relations { edges { relationType node { id type format } } }
"""

INFO_BY_ID_QUERY = (
    "query ($id: Int) { Media(id: $id, type: ANIME) {" + _MEDIA_FIELDS + "} }"
)

SEARCH_QUERY = (
    "query ($search: String) { Page(page: 1, perPage: 15) {"
    " media(search: $search, type: ANIME) {" + _MEDIA_FIELDS + "} } }"
)

VIEWER_QUERY = "query { Viewer { id } }"

LIST_ENTRY_QUERY = """
query ($userId: Int, $mediaId: Int) {
  MediaList(userId: $userId, mediaId: $mediaId) {
    progress
    status
    score(format: POINT_100)
    repeat
    startedAt { year month day }
    completedAt { year month day }
  }
}
"""

SAVE_ENTRY_MUTATION = """
mutation ($mediaId: Int, $status: MediaListStatus, $scoreRaw: Int, $progress: Int,
          $repeat: Int, $startedAt: FuzzyDateInput, $completedAt: FuzzyDateInput) {
  SaveMediaListEntry(mediaId: $mediaId, status: $status, scoreRaw: $scoreRaw,
                     progress: $progress, repeat: $repeat,
                     startedAt: $startedAt, completedAt: $completedAt) {
    id
  }
}
"""

STATUS_TO_ANILIST = {
    Status.WATCHING: "CURRENT",
    Status.COMPLETED: "COMPLETED",
    Status.ON_HOLD: "PAUSED",
    Status.DROPPED: "DROPPED",
    Status.PLAN_TO_WATCH: "PLANNING",
    Status.REWATCHING: "REPEATING",
}
ANILIST_TO_STATUS = {v: k for k, v in STATUS_TO_ANILIST.items()}

# Relation formats that continue the main story
SEQUEL_FORMATS = {"TV", "TV_SHORT", "ONA"}


def _fuzzy_date(value: date | None) -> dict[str, int | None]:
    if value is None:
        return {"year": None, "month": None, "day": None}
    return {"year": value.year, "month": value.month, "day": value.day}


def _parse_fuzzy_date(node: dict[str, Any] | None) -> date | None:
    if not node:
        return None
    year, month, day = node.get("year"), node.get("month"), node.get("day")
    if not (year and month and day):
        return None
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def parse_media(media: dict[str, Any]) -> SeriesInfo:
    title = media.get("title") or {}
    romaji = str(title.get("romaji") or "")
    sequel: int | None = None
    for edge in (media.get("relations") or {}).get("edges") or []:
        node = edge.get("node") or {}
        if (
            edge.get("relationType") == "SEQUEL"
            and node.get("type", "ANIME") == "ANIME"
            and node.get("format") in SEQUEL_FORMATS
        ):
            sequel = int(node["id"])
            break

    return SeriesInfo(
        id=int(media["id"]),
        title_preferred=str(title.get("userPreferred") or romaji),
        title_romaji=romaji,
        episodes=int(media.get("episodes") or 0),
        episode_length_mins=int(media.get("duration") or 24),
        sequel=sequel,
    )


def parse_list_entry(series_id: int, node: dict[str, Any]) -> SeriesEntry:
    status_raw = str(node.get("status") or "PLANNING")
    status = ANILIST_TO_STATUS.get(status_raw)
    if status is None:
        raise RemoteError(f"unknown list status from AniList: {status_raw}")

    score = node.get("score")
    return SeriesEntry(
        id=series_id,
        watched_episodes=int(node.get("progress") or 0),
        score=int(score) if score else None,
        status=status,
        times_rewatched=int(node.get("repeat") or 0),
        start_date=_parse_fuzzy_date(node.get("startedAt")),
        finish_date=_parse_fuzzy_date(node.get("completedAt")),
        needs_sync=False,
    )


class AniListRemote:
    """Minimal AniList GraphQL client. Token acquisition happens elsewhere."""

    is_offline = False

    def __init__(
        self,
        token: str | None = None,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        max_retries: int = ANILIST_MAX_RETRIES,
        retry_delay: float = ANILIST_RETRY_DELAY,
    ) -> None:
        self.token = token
        self.timeout = timeout
        self._client = client
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._user_id: int | None = None

    # ----------------------------
    # Transport
    # ----------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(ANILIST_API_URL, json=payload, headers=self._headers())
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(ANILIST_API_URL, json=payload, headers=self._headers())

    def _request(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Send a GraphQL request with retry logic.

        Timeouts, 429 and 5xx responses are retried with exponential backoff.
        Other 4xx responses and GraphQL errors are raised immediately.

        Returns the "data" node of the response.
        """
        payload = {"query": query, "variables": variables or {}}
        last_error: RemoteError | None = None

        for attempt in range(self.max_retries):
            delay = self.retry_delay * (2**attempt)
            try:
                resp = self._post(payload)
            except httpx.TimeoutException as e:
                last_error = RemoteError(f"AniList timed out: {e}")
                logger.debug(
                    "AniList timeout (attempt %d/%d), retrying in %ss",
                    attempt + 1,
                    self.max_retries,
                    delay,
                )
            except httpx.HTTPError as e:
                last_error = RemoteError(f"AniList request failed: {e}")
                logger.debug("AniList error (attempt %d/%d): %s", attempt + 1, self.max_retries, e)
            else:
                code = resp.status_code
                if code == 429 or code >= 500:
                    last_error = RemoteError(f"AniList returned HTTP {code}", status_code=code)
                    logger.debug(
                        "AniList HTTP %d (attempt %d/%d), retrying in %ss",
                        code,
                        attempt + 1,
                        self.max_retries,
                        delay,
                    )
                else:
                    return self._parse_response(resp)

            if attempt < self.max_retries - 1:
                time.sleep(delay)

        if last_error is None:
            raise RemoteError(f"no AniList request made (max_retries={self.max_retries})")
        logger.warning("AniList request failed after %d attempts: %s", self.max_retries, last_error)
        raise last_error

    @staticmethod
    def _parse_response(resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            raise RemoteError(
                f"AniList returned invalid JSON (HTTP {resp.status_code})",
                status_code=resp.status_code,
            ) from None

        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else {}
            status = first.get("status") if isinstance(first, dict) else None
            message = first.get("message") if isinstance(first, dict) else str(errors)
            raise RemoteError(
                f"AniList error: {message}",
                status_code=int(status) if status else resp.status_code,
            )

        if resp.status_code >= 400:
            raise RemoteError(f"AniList returned HTTP {resp.status_code}", status_code=resp.status_code)

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise RemoteError("AniList response has no data")
        return data

    def _require_token(self) -> None:
        if not self.token:
            raise RemoteError("not logged in: set remote.token or ANITRACK_TOKEN")

    def _viewer_id(self) -> int:
        if self._user_id is None:
            self._require_token()
            viewer = self._request(VIEWER_QUERY).get("Viewer") or {}
            if "id" not in viewer:
                raise RemoteError("AniList didn't return the current user")
            self._user_id = int(viewer["id"])
        return self._user_id

    # ----------------------------
    # Contract
    # ----------------------------

    def fetch_series_info(self, series_id: int) -> SeriesInfo:
        media = self._request(INFO_BY_ID_QUERY, {"id": series_id}).get("Media")
        if not media:
            raise RemoteError(f"no series with id {series_id}", status_code=404)
        return parse_media(media)

    def search_series(self, query: str) -> list[SeriesInfo]:
        page = self._request(SEARCH_QUERY, {"search": query}).get("Page") or {}
        return [parse_media(m) for m in page.get("media") or []]

    def fetch_entry(self, series_id: int) -> SeriesEntry | None:
        user_id = self._viewer_id()
        try:
            data = self._request(LIST_ENTRY_QUERY, {"userId": user_id, "mediaId": series_id})
        except RemoteError as e:
            # AniList answers 404 when the series isn't on the user's list
            if e.status_code == 404:
                return None
            raise

        node = data.get("MediaList")
        if not node:
            return None
        return parse_list_entry(series_id, node)

    def push_entry(self, series_id: int, fields: EntryFields) -> None:
        self._require_token()
        variables = {
            "mediaId": series_id,
            "status": STATUS_TO_ANILIST[fields["status"]],
            "scoreRaw": fields["score"] or 0,
            "progress": fields["watched_episodes"],
            "repeat": fields["times_rewatched"],
            "startedAt": _fuzzy_date(fields["start_date"]),
            "completedAt": _fuzzy_date(fields["finish_date"]),
        }
        self._request(SAVE_ENTRY_MUTATION, variables)
        logger.info("Pushed list entry %d (%s)", series_id, fields["status"])
