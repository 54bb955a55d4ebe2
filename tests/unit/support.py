"""
In-memory stand-ins shared by the unit tests: SQLite sessions, a Redis double,
a recording notifier and scripted Radarr/Sonarr clients.
"""
import asyncio
import fnmatch
import json
from datetime import datetime, timedelta, timezone
from itertools import count

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marquee import crud
from marquee.models import Base, RequestType, ServiceType, User
from marquee.services.arr_client import QueueEntry, ServiceNotFoundError
from marquee.services.notification_dispatcher import RequestNotifier


def run(coro):
    return asyncio.run(coro)


def make_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def make_user(db, username="alice", admin=False, permissions=None, **fields) -> User:
    user = User(
        username=username,
        groups=json.dumps(["admin"] if admin else []),
        permissions=json.dumps(permissions or []),
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_movie_request(db, user_id, tmdb_id=603, status="submitted", provider_id=None,
                       title="The Matrix", created_at=None, **kwargs):
    req = crud.create_request_with_items(
        request_type=RequestType.MOVIE,
        tmdb_id=tmdb_id,
        title=title,
        requested_by=user_id,
        status=status,
        items=[{"provider": ServiceType.RADARR, "provider_id": provider_id}],
        db=db,
        **kwargs,
    )
    if created_at is not None:
        req.created_at = created_at
        db.commit()
    return req


def make_episode_request(db, user_id, episodes, tmdb_id=1399, status="submitted", provider_id=None,
                         title="Game of Thrones", created_at=None, **kwargs):
    req = crud.create_request_with_items(
        request_type=RequestType.EPISODE,
        tmdb_id=tmdb_id,
        title=title,
        requested_by=user_id,
        status=status,
        items=[{"provider": ServiceType.SONARR, "provider_id": provider_id, "season": s, "episode": e}
               for s, e in episodes],
        db=db,
        **kwargs,
    )
    if created_at is not None:
        req.created_at = created_at
        db.commit()
    return req


class FakeRedis:
    """The subset of redis.asyncio.Redis the engine uses, kept in dicts."""

    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.lists = {}
        self.published = []
        self.expiries = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.values, self.hashes, self.lists):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def exists(self, *keys):
        return sum(1 for k in keys if k in self.values or k in self.hashes or k in self.lists)

    async def keys(self, pattern="*"):
        names = set(self.values) | set(self.hashes) | set(self.lists)
        return [k for k in names if fnmatch.fnmatch(k, pattern)]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True

    async def eval(self, script, numkeys, *args):
        # Only the compare-and-delete release script is used
        key, token = args[0], args[1]
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, field=None, value=None, mapping=None):
        h = self.hashes.setdefault(key, {})
        if field is not None:
            h[field] = str(value)
        for k, v in (mapping or {}).items():
            h[k] = str(v)
        return len(mapping or {}) + (1 if field is not None else 0)

    async def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def ltrim(self, key, start, end):
        lst = self.lists.get(key, [])
        self.lists[key] = lst[start:] if end == -1 else lst[start:end + 1]
        return True

    async def lrange(self, key, start, end):
        lst = self.lists.get(key, [])
        return lst[start:] if end == -1 else lst[start:end + 1]

    async def lset(self, key, index, value):
        self.lists[key][index] = value
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0


class RecordingNotifier(RequestNotifier):
    def __init__(self):
        self.events = []
        self.alerts = []
        self.fail = False

    async def notify(self, event):
        if self.fail:
            raise RuntimeError("notification channel down")
        self.events.append(event)

    async def notify_system_alert(self, key, message, severity="warning"):
        self.alerts.append((key, message, severity))

    @property
    def kinds(self):
        return [e.kind for e in self.events]


class StubAvailability:
    """Stands in for the Jellyfin cross-check."""

    def __init__(self, answer=None):
        self.answer = answer
        self.calls = []

    async def episodes_available(self, request):
        self.calls.append(request.id)
        return self.answer


class _ScriptedClient:
    service_type = "arr"

    def __init__(self):
        self.failures = {}
        self.calls = []
        self.queue = []
        self._ids = count(100)

    def fail(self, method, error):
        self.failures[method] = error

    def _call(self, method, *args):
        self.calls.append((method,) + args)
        error = self.failures.get(method)
        if error is not None:
            raise error

    async def get_queue(self, page=1, page_size=None):
        self._call("get_queue", page)
        return list(self.queue)


class FakeRadarr(_ScriptedClient):
    service_type = "radarr"

    def __init__(self, movies=None):
        super().__init__()
        self.movies = {m["id"]: m for m in (movies or [])}

    def queue_movie(self, movie_id, status="downloading"):
        self.queue.append(QueueEntry(title_id=movie_id, status=status))

    async def get_title(self, movie_id):
        self._call("get_title", movie_id)
        if movie_id not in self.movies:
            raise ServiceNotFoundError(f"radarr responded 404", "radarr", 404)
        return self.movies[movie_id]

    async def find_by_external_id(self, tmdb_id):
        self._call("find_by_external_id", tmdb_id)
        return next((m for m in self.movies.values() if m.get("tmdbId") == tmdb_id), None)

    async def add_title(self, tmdb_id, overrides=None):
        self._call("add_title", tmdb_id, overrides)
        existing = await self.find_by_external_id(tmdb_id)
        if existing:
            return existing
        movie = {"id": next(self._ids), "tmdbId": tmdb_id, "hasFile": False}
        self.movies[movie["id"]] = movie
        return movie


class FakeSonarr(_ScriptedClient):
    service_type = "sonarr"

    def __init__(self, series=None, episodes=None):
        super().__init__()
        self.series = {s["id"]: s for s in (series or [])}
        self.episodes = dict(episodes or {})

    def queue_episode(self, series_id, episode_id, status="downloading"):
        self.queue.append(QueueEntry(title_id=series_id, episode_ids=(episode_id,), status=status))

    async def get_title(self, series_id):
        self._call("get_title", series_id)
        if series_id not in self.series:
            raise ServiceNotFoundError(f"sonarr responded 404", "sonarr", 404)
        return self.series[series_id]

    async def find_by_external_id(self, tmdb_id):
        self._call("find_by_external_id", tmdb_id)
        return next((s for s in self.series.values() if s.get("tmdbId") == tmdb_id), None)

    async def find_by_tvdb_id(self, tvdb_id):
        self._call("find_by_tvdb_id", tvdb_id)
        return next((s for s in self.series.values() if s.get("tvdbId") == tvdb_id), None)

    async def get_episodes(self, series_id):
        self._call("get_episodes", series_id)
        return list(self.episodes.get(series_id, []))

    async def add_title(self, tvdb_id, overrides=None):
        self._call("add_title", tvdb_id, overrides)
        existing = await self.find_by_tvdb_id(tvdb_id)
        if existing:
            return existing
        series = {"id": next(self._ids), "tvdbId": tvdb_id, "statistics": {}}
        self.series[series["id"]] = series
        return series

    async def monitor_and_search(self, series_id, pairs):
        self._call("monitor_and_search", series_id, sorted(pairs))
        return []


def episode(ep_id, season, number, has_file=False):
    return {"id": ep_id, "seasonNumber": season, "episodeNumber": number, "hasFile": has_file}


def series_record(series_id, tmdb_id=1399, tvdb_id=121361, files=0, total=10, seasons=None):
    return {
        "id": series_id,
        "tmdbId": tmdb_id,
        "tvdbId": tvdb_id,
        "statistics": {"episodeFileCount": files, "totalEpisodeCount": total},
        "seasons": seasons or [],
    }
