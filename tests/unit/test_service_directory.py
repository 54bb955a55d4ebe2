import json
import unittest
from datetime import timedelta

from support import BASE_TIME, make_session_factory

from marquee.models import MediaService
from marquee.services.service_directory import ServiceDirectory
from marquee.utils.cache import TTLCache
from marquee.utils.encryption import encrypt


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestServiceDirectory(unittest.TestCase):
    def setUp(self):
        self.Session = make_session_factory()
        self.clock = FakeClock()
        self.directory = ServiceDirectory(self.Session, cache=TTLCache(5, clock=self.clock))

    def _add(self, name, type_="radarr", minutes=0, config=None, api_key="secret", **fields):
        db = self.Session()
        try:
            row = MediaService(
                name=name,
                type=type_,
                base_url=fields.pop("base_url", f"http://{name}:7878/"),
                api_key_encrypted=fields.pop("api_key_encrypted", None) or encrypt(api_key),
                config=json.dumps(config or {}),
                created_at=BASE_TIME + timedelta(minutes=minutes),
                **fields,
            )
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    def test_newest_enabled_instance_wins(self):
        self._add("old", minutes=0)
        self._add("new", minutes=5)
        self._add("disabled", minutes=10, enabled=False)

        resolved = self.directory.resolve_service("radarr")

        self.assertEqual(resolved.name, "new")
        self.assertEqual(resolved.base_url, "http://new:7878")
        self.assertEqual(resolved.api_key, "secret")

    def test_default_server_flag_beats_recency(self):
        self._add("primary", minutes=0, config={"defaultServer": True})
        self._add("newer", minutes=5)

        self.assertEqual(self.directory.resolve_service("radarr").name, "primary")

    def test_missing_type_is_none_and_cached(self):
        self.assertIsNone(self.directory.resolve_service("sonarr"))
        self._add("late", type_="sonarr")
        self.assertIsNone(self.directory.resolve_service("sonarr"))

        self.clock.now = 6
        self.assertEqual(self.directory.resolve_service("sonarr").name, "late")

    def test_clear_cache_picks_up_changes(self):
        self._add("first", minutes=0)
        self.assertEqual(self.directory.resolve_service("radarr").name, "first")
        self._add("second", minutes=5)

        self.assertEqual(self.directory.resolve_service("radarr").name, "first")
        self.directory.clear_cache("radarr")
        self.assertEqual(self.directory.resolve_service("radarr").name, "second")

    def test_undecryptable_key_is_not_configured(self):
        self._add("broken", api_key_encrypted="bm90LWEtdG9rZW4=")
        self.assertIsNone(self.directory.resolve_service("radarr"))

    def test_blank_base_url_is_not_configured(self):
        self._add("blank", base_url="  ")
        self.assertIsNone(self.directory.resolve_service("radarr"))


if __name__ == "__main__":
    unittest.main()
