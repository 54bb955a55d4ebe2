import unittest

import httpx

from support import FakeRadarr, FakeSonarr, RecordingNotifier, make_movie_request, make_session_factory, make_user, run

from marquee import crud
from marquee.models import MediaRequest, ServiceType
from marquee.services.arr_client import ServiceTransientError
from marquee.services.service_directory import ServiceDirectory
from marquee.services.trakt_client import TraktUnavailableError
from marquee.services.watchlist_import import WatchlistImporter, can_auto_approve
from marquee.utils.encryption import encrypt


class FakeJellyfin:
    def __init__(self, favorites=None):
        self.favorites = favorites or {}

    async def get_favorites(self, jellyfin_user_id):
        return list(self.favorites.get(jellyfin_user_id, []))


class FakeTrakt:
    def __init__(self, watchlists, error=None):
        self.watchlists = watchlists
        self.error = error
        self.asked = []

    async def get_watchlist(self, media_type="movies"):
        self.asked.append(media_type)
        if self.error is not None:
            raise self.error
        return list(self.watchlists.get(media_type, []))


def jellyfin_movie(tmdb_id, name):
    return {"Type": "Movie", "Name": name, "ProviderIds": {"Tmdb": str(tmdb_id)}}


def trakt_movie(tmdb_id, title):
    return {"media_type": "movie", "tmdb_id": tmdb_id, "tvdb_id": None, "title": title, "year": 1999}


def trakt_show(tmdb_id, tvdb_id, title):
    return {"media_type": "tv", "tmdb_id": tmdb_id, "tvdb_id": tvdb_id, "title": title, "year": 2011}


async def no_metadata(tmdb_id, media_type):
    return {}


class TestWatchlistImport(unittest.TestCase):
    def setUp(self):
        self.Session = make_session_factory()
        self.notifier = RecordingNotifier()
        self.radarr = FakeRadarr()
        self.sonarr = FakeSonarr()
        self.jellyfin = FakeJellyfin()
        self.trakt = {}

    def importer(self):
        return WatchlistImporter(
            session_factory=self.Session,
            directory=ServiceDirectory(self.Session),
            notifier=self.notifier,
            clients={ServiceType.RADARR: self.radarr, ServiceType.SONARR: self.sonarr},
            jellyfin=self.jellyfin,
            trakt_factory=lambda user_id: self.trakt[user_id],
            metadata_fetcher=no_metadata,
        )

    def add_user(self, username, movies=True, tv=True, trakt=True, jellyfin_id=None, **kwargs):
        db = self.Session()
        try:
            user = make_user(
                db, username,
                watchlist_sync_movies=movies,
                watchlist_sync_tv=tv,
                trakt_access_token_encrypted="token" if trakt else None,
                jellyfin_user_id=jellyfin_id,
                **kwargs,
            )
            return user.id
        finally:
            db.close()

    def requests(self):
        db = self.Session()
        try:
            return sorted(
                (r.tmdb_id, r.request_type, r.status, r.requested_by)
                for r in db.query(MediaRequest).all()
            )
        finally:
            db.close()

    def test_sources_are_unioned_and_untracked_titles_become_pending(self):
        alice = self.add_user("alice", jellyfin_id="jf-alice")
        self.jellyfin.favorites["jf-alice"] = [jellyfin_movie(603, "The Matrix"), {"Type": "Series", "ProviderIds": {}}]
        self.trakt[alice] = FakeTrakt({
            "movies": [trakt_movie(603, "The Matrix"), trakt_movie(27205, "Inception")],
            "shows": [trakt_show(1399, 121361, "Game of Thrones")],
        })
        self.radarr.movies[7] = {"id": 7, "tmdbId": 27205, "hasFile": True}

        summary = run(self.importer().run())

        self.assertEqual(summary["users"], 1)
        self.assertEqual(summary["created"], 2)
        self.assertEqual(summary["skipped"], 1)
        self.assertEqual(summary["auto_approved"], 0)
        self.assertEqual(self.requests(), [(603, "movie", "pending", alice), (1399, "episode", "pending", alice)])
        self.assertNotIn("add_title", [c[0] for c in self.radarr.calls + self.sonarr.calls])

    def test_per_user_toggles_limit_the_import(self):
        bob = self.add_user("bob", tv=False)
        self.trakt[bob] = FakeTrakt({
            "movies": [trakt_movie(603, "The Matrix")],
            "shows": [trakt_show(1399, 121361, "Game of Thrones")],
        })

        run(self.importer().run())

        self.assertEqual(self.trakt[bob].asked, ["movies"])
        self.assertEqual([r[0] for r in self.requests()], [603])

    def test_existing_active_request_is_skipped(self):
        alice = self.add_user("alice")
        db = self.Session()
        make_movie_request(db, alice, tmdb_id=603, status="pending")
        db.close()
        self.trakt[alice] = FakeTrakt({"movies": [trakt_movie(603, "The Matrix")]})

        summary = run(self.importer().run())

        self.assertEqual(summary["created"], 0)
        self.assertEqual(summary["skipped"], 1)
        self.assertEqual(len(self.requests()), 1)

    def test_auto_approved_show_is_submitted_and_announced(self):
        carol = self.add_user("carol", permissions=["auto_approve_tv"])
        self.trakt[carol] = FakeTrakt({
            "movies": [trakt_movie(603, "The Matrix")],
            "shows": [trakt_show(1399, 121361, "Game of Thrones")],
        })

        summary = run(self.importer().run())

        self.assertEqual(summary["auto_approved"], 1)
        self.assertEqual(summary["submitted"], 1)
        self.assertEqual(self.requests(), [(603, "movie", "pending", carol), (1399, "episode", "submitted", carol)])
        add = next(c for c in self.sonarr.calls if c[0] == "add_title")
        self.assertEqual(add[1], 121361)
        self.assertEqual(add[2]["monitor"], "all")
        self.assertEqual(self.notifier.kinds, ["request_submitted"])

    def test_transient_failure_keeps_request_queued_until_next_run(self):
        admin = self.add_user("admin", admin=True)
        self.trakt[admin] = FakeTrakt({"movies": [trakt_movie(603, "The Matrix")]})
        self.radarr.fail("add_title", ServiceTransientError("radarr responded 503", "radarr", 503))

        first = run(self.importer().run())
        self.assertEqual(first["submitted"], 0)
        self.assertEqual(self.requests()[0][2], "queued")

        self.radarr.failures.clear()
        second = run(self.importer().run())

        self.assertEqual(second["created"], 0)
        self.assertEqual(second["submitted"], 1)
        self.assertEqual(self.requests()[0][2], "submitted")
        self.assertEqual(self.notifier.kinds, ["request_submitted"])

    def test_one_failing_user_does_not_stop_the_rest(self):
        broken = self.add_user("broken", movies=True, tv=False)
        healthy = self.add_user("healthy", movies=True, tv=False)
        self.trakt[broken] = FakeTrakt({}, error=RuntimeError("corrupt token row"))
        self.trakt[healthy] = FakeTrakt({"movies": [trakt_movie(603, "The Matrix")]})

        summary = run(self.importer().run())

        self.assertEqual(summary["users"], 2)
        self.assertEqual(summary["errors"], 1)
        self.assertEqual(self.requests(), [(603, "movie", "pending", healthy)])

    def test_trakt_outage_still_imports_jellyfin_favorites(self):
        dave = self.add_user("dave", tv=False, jellyfin_id="jf-dave")
        self.jellyfin.favorites["jf-dave"] = [jellyfin_movie(550, "Fight Club")]
        self.trakt[dave] = FakeTrakt({}, error=TraktUnavailableError("Trakt API is down", 503))

        summary = run(self.importer().run())

        self.assertEqual(summary["errors"], 1)
        self.assertEqual([r[0] for r in self.requests()], [550])


    def test_series_list_is_fetched_once_per_run(self):
        erin = self.add_user("erin", movies=False)
        self.trakt[erin] = FakeTrakt({"shows": [trakt_show(2000 + n, 3000 + n, f"Show {n}") for n in range(5)]})
        db = self.Session()
        crud.create_service(name="sonarr", service_type="sonarr", base_url="http://sonarr.local",
                            api_key_encrypted=encrypt("key"), db=db)
        db.close()
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, dict(request.url.params)))
            return httpx.Response(200, json=[])

        importer = WatchlistImporter(
            session_factory=self.Session,
            directory=ServiceDirectory(self.Session),
            notifier=self.notifier,
            jellyfin=self.jellyfin,
            trakt_factory=lambda user_id: self.trakt[user_id],
            metadata_fetcher=no_metadata,
            transport=httpx.MockTransport(handler),
        )
        summary = run(importer.run())

        self.assertEqual(summary["created"], 5)
        full_lists = [s for s in seen if s[:2] == ("GET", "/api/v3/series") and not s[2]]
        self.assertEqual(len(full_lists), 1)
        by_tvdb = [s for s in seen if s[:2] == ("GET", "/api/v3/series") and "tvdbId" in s[2]]
        self.assertEqual(len(by_tvdb), 5)


class TestAutoApprove(unittest.TestCase):
    def setUp(self):
        self.Session = make_session_factory()

    def test_permissions(self):
        db = self.Session()
        try:
            admin = make_user(db, "admin", admin=True)
            tv_only = make_user(db, "tv", permissions=["auto_approve_tv"])
            everything = make_user(db, "all", permissions=["AUTO_APPROVE"])
            nobody = make_user(db, "nobody")

            self.assertTrue(can_auto_approve(admin, "movie"))
            self.assertTrue(can_auto_approve(tv_only, "tv"))
            self.assertFalse(can_auto_approve(tv_only, "movie"))
            self.assertTrue(can_auto_approve(everything, "movie"))
            self.assertFalse(can_auto_approve(nobody, "tv"))
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
