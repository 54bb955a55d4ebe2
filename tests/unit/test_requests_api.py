import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from support import make_movie_request, make_session_factory, make_user

from marquee.api import requests as requests_api
from marquee.core.database import get_db
from marquee.models import MediaRequest


METADATA = {"title": "The Matrix", "poster_path": "/matrix.jpg", "release_year": 1999}


class TestRequestsApi(unittest.TestCase):
    def setUp(self):
        self.Session = make_session_factory()
        db = self.Session()
        self.user_id = make_user(db, "alice").id
        self.admin_id = make_user(db, "admin", admin=True).id
        db.close()

        app = FastAPI()
        app.include_router(requests_api.router, prefix="/api/requests")

        def override_get_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)

        metadata = patch.object(requests_api, "fetch_display_metadata", new=AsyncMock(return_value=METADATA))
        metadata.start()
        self.addCleanup(metadata.stop)
        self.submitter = MagicMock()
        self.submitter.submit = AsyncMock(return_value=True)
        submitter = patch.object(requests_api, "RequestSubmitter", return_value=self.submitter)
        submitter.start()
        self.addCleanup(submitter.stop)

    def test_regular_user_gets_a_pending_request(self):
        resp = self.client.post("/api/requests/", json={"media_type": "movie", "tmdb_id": 603, "user_id": self.user_id})

        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["title"], "The Matrix")
        self.assertEqual(body["release_year"], 1999)
        self.assertEqual(len(body["items"]), 1)
        self.submitter.submit.assert_not_called()

    def test_admin_request_is_submitted_immediately(self):
        resp = self.client.post("/api/requests/", json={
            "media_type": "tv", "tmdb_id": 1399, "tvdb_id": 121361, "user_id": self.admin_id,
            "episodes": [{"season": 1, "episode": 1}, {"season": 1, "episode": 2}],
        })

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["status"], "queued")
        self.assertEqual([(i["season"], i["episode"]) for i in resp.json()["items"]], [(1, 1), (1, 2)])
        self.submitter.submit.assert_awaited_once()

    def test_duplicate_active_request_conflicts(self):
        db = self.Session()
        make_movie_request(db, self.user_id, tmdb_id=603, status="pending")
        db.close()

        resp = self.client.post("/api/requests/", json={"media_type": "movie", "tmdb_id": 603, "user_id": self.admin_id})

        self.assertEqual(resp.status_code, 409)

    def test_tv_request_needs_episodes(self):
        resp = self.client.post("/api/requests/", json={"media_type": "tv", "tmdb_id": 1399, "user_id": self.user_id})
        self.assertEqual(resp.status_code, 400)

    def test_unknown_user(self):
        resp = self.client.post("/api/requests/", json={"media_type": "movie", "tmdb_id": 603, "user_id": 999})
        self.assertEqual(resp.status_code, 404)

    def test_list_filters_and_validation(self):
        db = self.Session()
        make_movie_request(db, self.user_id, tmdb_id=1, status="available")
        make_movie_request(db, self.user_id, tmdb_id=2, status="pending")
        db.close()

        resp = self.client.get("/api/requests/", params={"status": "available"})
        self.assertEqual([r["tmdb_id"] for r in resp.json()], [1])
        self.assertEqual(self.client.get("/api/requests/", params={"status": "bogus"}).status_code, 400)
        self.assertEqual(self.client.get("/api/requests/missing").status_code, 404)

    def test_sync_now_reports_busy_lock(self):
        db = self.Session()
        req_id = make_movie_request(db, self.user_id, provider_id=7).id
        db.close()
        service = MagicMock()
        service.sync_request = AsyncMock(return_value={"status": "locked"})

        with patch.object(requests_api, "RequestSyncService", return_value=service):
            resp = self.client.post(f"/api/requests/{req_id}/sync")

        self.assertEqual(resp.status_code, 409)
        service.sync_request.assert_awaited_once_with(req_id)

    def test_sync_now_returns_fresh_request(self):
        db = self.Session()
        req_id = make_movie_request(db, self.user_id, provider_id=7).id
        db.close()
        service = MagicMock()

        async def fake_sync(request_id):
            s = self.Session()
            try:
                s.get(MediaRequest, request_id).status = "available"
                s.commit()
            finally:
                s.close()
            return {"status": "ok", "processed": 1}

        service.sync_request = fake_sync

        with patch.object(requests_api, "RequestSyncService", return_value=service):
            resp = self.client.post(f"/api/requests/{req_id}/sync")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["request"]["status"], "available")


if __name__ == "__main__":
    unittest.main()
