import unittest
from types import SimpleNamespace

from marquee.models import RequestStatus
from marquee.services.arr_client import QueueEntry, QueueIndex
from marquee.services.status_resolver import (
    advance, resolve_episode_status, resolve_movie_status, series_partially_available,
)


def _item(item_id, season=None, episode=None, status="submitted"):
    return SimpleNamespace(id=item_id, season=season, episode=episode, status=status)


def _request(status, items):
    return SimpleNamespace(status=status, items=items)


EMPTY_QUEUE = QueueIndex.build([])


class TestAdvance(unittest.TestCase):
    def test_forward_moves_are_allowed(self):
        self.assertEqual(advance("submitted", "downloading"), "downloading")
        self.assertEqual(advance("downloading", "partially_available"), "partially_available")
        self.assertEqual(advance("partially_available", "available"), "available")

    def test_never_moves_backwards(self):
        self.assertIsNone(advance("downloading", "submitted"))
        self.assertIsNone(advance("partially_available", "downloading"))

    def test_terminal_states_are_final(self):
        self.assertIsNone(advance("available", "downloading"))
        self.assertIsNone(advance("available", "removed"))
        self.assertIsNone(advance("removed", "available"))

    def test_removed_from_any_open_state(self):
        for status in ("queued", "submitted", "downloading", "partially_available"):
            self.assertEqual(advance(status, "removed"), "removed")

    def test_same_status_is_no_transition(self):
        self.assertIsNone(advance("downloading", "downloading"))
        self.assertIsNone(advance("downloading", None))

    def test_queued_and_submitted_share_a_rank(self):
        self.assertEqual(advance("queued", "submitted"), "submitted")


class TestMovieResolution(unittest.TestCase):
    def test_file_present_is_available(self):
        req = _request("downloading", [_item(1, status="downloading")])
        res = resolve_movie_status(req, {"id": 7, "hasFile": True}, EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.AVAILABLE)
        self.assertEqual(res.item_statuses, {1: "available"})

    def test_active_queue_entry_is_downloading(self):
        queue = QueueIndex.build([QueueEntry(title_id=7, status="downloading")])
        req = _request("submitted", [_item(1)])
        res = resolve_movie_status(req, {"id": 7, "hasFile": False}, queue)
        self.assertEqual(res.status, RequestStatus.DOWNLOADING)

    def test_completed_queue_entry_is_ignored(self):
        queue = QueueIndex.build([QueueEntry(title_id=7, status="completed")])
        req = _request("submitted", [_item(1)])
        res = resolve_movie_status(req, {"id": 7, "hasFile": False}, queue)
        self.assertIsNone(res.status)
        self.assertFalse(res.changed)

    def test_missing_movie_is_removed(self):
        req = _request("downloading", [_item(1, status="downloading")])
        res = resolve_movie_status(req, None, EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.REMOVED)
        self.assertIn("no longer exists", res.reason)

    def test_ambiguous_state_does_not_flap_back(self):
        req = _request("downloading", [_item(1, status="downloading")])
        res = resolve_movie_status(req, {"id": 7, "hasFile": False}, EMPTY_QUEUE)
        self.assertIsNone(res.status)


class TestEpisodeResolution(unittest.TestCase):
    def setUp(self):
        self.series = {
            "id": 5,
            "statistics": {"episodeFileCount": 2, "totalEpisodeCount": 2},
            "seasons": [{"seasonNumber": 1, "statistics": {"episodeFileCount": 2, "totalEpisodeCount": 2}}],
        }

    def test_all_items_available_in_complete_series(self):
        req = _request("downloading", [_item(1, 1, 1, "downloading"), _item(2, 1, 2, "downloading")])
        episodes = [
            {"id": 11, "seasonNumber": 1, "episodeNumber": 1, "hasFile": True},
            {"id": 12, "seasonNumber": 1, "episodeNumber": 2, "hasFile": True},
        ]
        res = resolve_episode_status(req, self.series, episodes, EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.AVAILABLE)
        self.assertEqual(res.item_statuses, {1: "available", 2: "available"})

    def test_some_items_available_is_partial(self):
        req = _request("submitted", [_item(1, 1, 1), _item(2, 1, 2)])
        episodes = [
            {"id": 11, "seasonNumber": 1, "episodeNumber": 1, "hasFile": True},
            {"id": 12, "seasonNumber": 1, "episodeNumber": 2, "hasFile": False},
        ]
        res = resolve_episode_status(req, self.series, episodes, EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.PARTIALLY_AVAILABLE)
        self.assertEqual(res.available, 1)
        self.assertEqual(res.total, 2)

    def test_queued_episode_is_downloading(self):
        queue = QueueIndex.build([QueueEntry(title_id=5, episode_ids=(12,), status="downloading")])
        req = _request("submitted", [_item(2, 1, 2)])
        episodes = [{"id": 12, "seasonNumber": 1, "episodeNumber": 2, "hasFile": False}]
        res = resolve_episode_status(req, self.series, episodes, queue)
        self.assertEqual(res.status, RequestStatus.DOWNLOADING)
        self.assertEqual(res.item_statuses, {2: "downloading"})

    def test_incomplete_series_keeps_request_partial(self):
        series = {
            "id": 5,
            "statistics": {"episodeFileCount": 1, "totalEpisodeCount": 10},
            "seasons": [{"seasonNumber": 1, "statistics": {"episodeFileCount": 1, "totalEpisodeCount": 10}}],
        }
        req = _request("downloading", [_item(1, 1, 1, "downloading")])
        episodes = [{"id": 11, "seasonNumber": 1, "episodeNumber": 1, "hasFile": True}]
        res = resolve_episode_status(req, series, episodes, EMPTY_QUEUE, "any_missing")
        self.assertEqual(res.status, RequestStatus.PARTIALLY_AVAILABLE)

        ignored = resolve_episode_status(req, series, episodes, EMPTY_QUEUE, "ignore")
        self.assertEqual(ignored.status, RequestStatus.AVAILABLE)

    def test_available_item_stays_available_when_file_disappears(self):
        req = _request("partially_available", [_item(1, 1, 1, "available"), _item(2, 1, 2, "submitted")])
        episodes = [
            {"id": 11, "seasonNumber": 1, "episodeNumber": 1, "hasFile": False},
            {"id": 12, "seasonNumber": 1, "episodeNumber": 2, "hasFile": False},
        ]
        res = resolve_episode_status(req, self.series, episodes, EMPTY_QUEUE)
        self.assertIsNone(res.status)
        self.assertEqual(res.item_statuses, {})

    def test_missing_series_is_removed(self):
        req = _request("downloading", [_item(1, 1, 1, "downloading")])
        res = resolve_episode_status(req, None, [], EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.REMOVED)
        self.assertEqual(res.item_statuses, {1: "removed"})

    def test_whole_series_request_uses_statistics(self):
        req = _request("submitted", [_item(1)])
        partial = {"id": 5, "statistics": {"episodeFileCount": 3, "totalEpisodeCount": 10}}
        res = resolve_episode_status(req, partial, [], EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.PARTIALLY_AVAILABLE)

        complete = {"id": 5, "statistics": {"episodeFileCount": 10, "totalEpisodeCount": 10}}
        res = resolve_episode_status(req, complete, [], EMPTY_QUEUE)
        self.assertEqual(res.status, RequestStatus.AVAILABLE)


class TestSeriesPartialPolicy(unittest.TestCase):
    def test_tracked_seasons_only_inspects_requested_seasons(self):
        series = {
            "statistics": {"episodeFileCount": 12, "totalEpisodeCount": 20},
            "seasons": [
                {"seasonNumber": 1, "statistics": {"episodeFileCount": 10, "totalEpisodeCount": 10}},
                {"seasonNumber": 2, "statistics": {"episodeFileCount": 2, "totalEpisodeCount": 10}},
            ],
        }
        self.assertTrue(series_partially_available(series, "any_missing"))
        self.assertFalse(series_partially_available(series, "tracked_seasons", {1}))
        self.assertTrue(series_partially_available(series, "tracked_seasons", {2}))
        self.assertFalse(series_partially_available(series, "ignore"))


if __name__ == "__main__":
    unittest.main()
