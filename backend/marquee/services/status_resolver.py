"""
status_resolver.py

Pure decision logic: maps the external state of a request (title existence,
file presence, queue membership, per-episode file/queue state) onto the request
lifecycle. Nothing here performs I/O; callers pass in what the *arr services
reported and persist whatever Resolution comes back.

Ambiguous evidence yields "no transition" (status=None) instead of a downgrade,
so a single noisy pass cannot flap a request back to an earlier state.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set

from marquee.models import RequestStatus
from marquee.services.arr_client import QueueIndex


@dataclass
class Resolution:
    status: Optional[str] = None  # None means "no transition"
    item_statuses: Dict[int, str] = field(default_factory=dict)  # item id -> new status (changed items only)
    reason: Optional[str] = None
    available: int = 0
    total: int = 0

    @property
    def changed(self) -> bool:
        return self.status is not None or bool(self.item_statuses)


def advance(current: Optional[str], proposed: Optional[str]) -> Optional[str]:
    """Apply the lifecycle guard; returns the status to persist or None.

    `removed` is always allowed from a non-terminal state. Terminal states are
    never revisited, and nothing moves backwards along the lifecycle ranks.
    """
    if proposed is None or proposed == current:
        return None
    if current in RequestStatus.TERMINAL:
        return None
    if proposed == RequestStatus.REMOVED:
        return proposed
    current_rank = RequestStatus.RANK.get(current, -1)
    proposed_rank = RequestStatus.RANK.get(proposed)
    if proposed_rank is None or proposed_rank < current_rank:
        return None
    if proposed_rank == current_rank and current not in (RequestStatus.QUEUED, RequestStatus.SUBMITTED):
        return None
    return proposed


def _episode_totals(stats: Dict[str, Any]) -> tuple:
    files = int(stats.get("episodeFileCount") or 0)
    total = int(stats.get("totalEpisodeCount") or stats.get("episodeCount") or 0)
    return files, total


def series_has_files(series: Optional[Dict[str, Any]]) -> bool:
    if not series:
        return False
    files, _ = _episode_totals(series.get("statistics") or {})
    return files > 0


def series_partially_available(series: Optional[Dict[str, Any]], policy: str = "any_missing",
                               seasons: Optional[Iterable[int]] = None) -> bool:
    """True when the series is visibly incomplete at series level.

    any_missing: overall files < total, or any season with 0 < files < total.
    tracked_seasons: only seasons in `seasons` are inspected.
    ignore: never.
    """
    if not series or policy == "ignore":
        return False

    season_filter: Optional[Set[int]] = set(seasons) if (policy == "tracked_seasons" and seasons is not None) else None
    if season_filter is None:
        files, total = _episode_totals(series.get("statistics") or {})
        if 0 < files < total:
            return True

    for season in series.get("seasons") or []:
        number = season.get("seasonNumber")
        if season_filter is not None and number not in season_filter:
            continue
        files, total = _episode_totals(season.get("statistics") or {})
        if total > 0 and 0 < files < total:
            return True
    return False


def resolve_movie_status(request, movie: Optional[Dict[str, Any]], queue_index: QueueIndex) -> Resolution:
    """Decide a movie request's status from its Radarr record and the queue snapshot.

    `movie` is None when Radarr reported the tracked title as not found.
    """
    current = request.status
    if movie is None:
        proposed = RequestStatus.REMOVED
        reason = "Movie no longer exists in Radarr"
    elif movie.get("hasFile"):
        proposed = RequestStatus.AVAILABLE
        reason = None
    elif queue_index.title_active(movie.get("id")):
        proposed = RequestStatus.DOWNLOADING
        reason = None
    else:
        return Resolution(total=1)

    status = advance(current, proposed)
    resolution = Resolution(status=status, reason=reason, total=1,
                            available=1 if proposed == RequestStatus.AVAILABLE else 0)
    if status is not None:
        for item in request.items:
            if item.status != status:
                resolution.item_statuses[item.id] = status
    return resolution


def _classify_item(item, episode: Optional[Dict[str, Any]], queue_index: QueueIndex) -> tuple:
    """Return (status, queued) for one tracked (season, episode) item."""
    if episode is not None and episode.get("hasFile"):
        return RequestStatus.AVAILABLE, False
    # Once confirmed present, queue noise must not un-mark an episode
    if item.status == RequestStatus.AVAILABLE:
        return RequestStatus.AVAILABLE, False
    if episode is not None and queue_index.episode_active(episode.get("id")):
        return RequestStatus.DOWNLOADING, True
    return item.status, False


def resolve_episode_status(request, series: Optional[Dict[str, Any]], episodes: Iterable[Dict[str, Any]],
                           queue_index: QueueIndex, partial_policy: str = "any_missing") -> Resolution:
    """Per-item classification, then aggregation to a request-level status."""
    current = request.status
    if series is None:
        status = advance(current, RequestStatus.REMOVED)
        resolution = Resolution(status=status, reason="Series no longer exists in Sonarr")
        if status is not None:
            resolution.item_statuses = {i.id: status for i in request.items if i.status != status}
        return resolution

    tracked = [i for i in request.items if i.season is not None and i.episode is not None]
    if not tracked:
        return _resolve_whole_series(request, series, queue_index)

    by_number = {}
    for ep in episodes or []:
        key = (ep.get("seasonNumber"), ep.get("episodeNumber"))
        by_number[key] = ep

    resolution = Resolution(total=len(tracked))
    queued = 0
    for item in tracked:
        item_status, in_queue = _classify_item(item, by_number.get((item.season, item.episode)), queue_index)
        if item_status == RequestStatus.AVAILABLE:
            resolution.available += 1
        if in_queue:
            queued += 1
        if item_status != item.status and advance(item.status, item_status) is not None:
            resolution.item_statuses[item.id] = item_status

    if resolution.available == resolution.total:
        seasons = {i.season for i in tracked}
        if series_partially_available(series, partial_policy, seasons):
            proposed = RequestStatus.PARTIALLY_AVAILABLE
            resolution.reason = "Requested episodes are available; the series is still incomplete"
        else:
            proposed = RequestStatus.AVAILABLE
    elif resolution.available > 0:
        proposed = RequestStatus.PARTIALLY_AVAILABLE
        resolution.reason = f"{resolution.available}/{resolution.total} requested episodes available"
    elif queued > 0:
        proposed = RequestStatus.DOWNLOADING
    else:
        proposed = None

    resolution.status = advance(current, proposed)
    return resolution


def _resolve_whole_series(request, series: Dict[str, Any], queue_index: QueueIndex) -> Resolution:
    """Requests that track a series without naming episodes use series statistics."""
    files, total = _episode_totals(series.get("statistics") or {})
    resolution = Resolution(total=total, available=files)
    if series_has_files(series):
        if series_partially_available(series, "any_missing"):
            proposed = RequestStatus.PARTIALLY_AVAILABLE
            resolution.reason = f"{files}/{total} episodes available"
        else:
            proposed = RequestStatus.AVAILABLE
    elif queue_index.title_active(series.get("id")):
        proposed = RequestStatus.DOWNLOADING
    else:
        proposed = None

    resolution.status = advance(request.status, proposed)
    if resolution.status is not None:
        resolution.item_statuses = {i.id: resolution.status for i in request.items if i.status != resolution.status}
    return resolution
