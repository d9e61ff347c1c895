import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import geo_math as gm
from duplicate_detector import DuplicateDetector
from errors import DuplicateCheckError
from geo_math import GeoPoint
from repository import InMemoryIssueRepository

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
CENTER = GeoPoint(12.9716, 77.5946)


def north_of(center, meters):
    return GeoPoint(center.lat + meters / gm.METERS_PER_DEGREE_LAT, center.lng)


class DuplicateDetectorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.repo = InMemoryIssueRepository(clock=lambda: NOW)
        self.detector = DuplicateDetector(self.repo, clock=lambda: NOW)

    def seed(self, point, category="Pothole", status="Submitted", minutes_ago=5, **extra):
        return self.repo.seed(
            category=category,
            status=status,
            lat=point.lat if point else None,
            lng=point.lng if point else None,
            created_at=NOW - timedelta(minutes=minutes_ago),
            **extra,
        )

    async def find(self, **kwargs):
        return await self.detector.find_nearby_duplicate("Pothole", CENTER.lat, CENTER.lng, **kwargs)

    async def test_no_records_returns_none(self):
        self.assertIsNone(await self.find())

    async def test_single_nearby_record_is_returned(self):
        issue_id = self.seed(north_of(CENTER, 20))
        found = await self.find()
        self.assertIsNotNone(found)
        self.assertEqual(found.id, issue_id)

    async def test_closest_of_two_wins(self):
        self.seed(north_of(CENTER, 50), title="fifty")
        near_id = self.seed(north_of(CENTER, 10), title="ten", minutes_ago=20)
        found = await self.find()
        self.assertEqual(found.id, near_id)

        candidate = await self.detector.find_nearby_candidate("Pothole", CENTER.lat, CENTER.lng)
        self.assertAlmostEqual(candidate.distance_meters, 10, delta=0.01)

    async def test_radius_boundary_is_inclusive(self):
        point = north_of(CENTER, 45)
        issue_id = self.seed(point)
        exact = gm.distance_meters(CENTER, point)

        found = await self.find(radius_meters=exact)
        self.assertEqual(found.id, issue_id)
        self.assertIsNone(await self.find(radius_meters=exact - 1))

    async def test_outside_radius_is_ignored(self):
        self.seed(north_of(CENTER, 61))
        self.assertIsNone(await self.find())

    async def test_resolved_records_are_ignored(self):
        self.seed(north_of(CENTER, 5), status="Resolved")
        self.assertIsNone(await self.find())

    async def test_in_progress_records_still_count(self):
        issue_id = self.seed(north_of(CENTER, 5), status="In Progress")
        self.assertEqual((await self.find()).id, issue_id)

    async def test_other_categories_are_ignored(self):
        self.seed(north_of(CENTER, 5), category="Garbage")
        self.assertIsNone(await self.find())

    async def test_old_records_are_outside_the_window(self):
        self.seed(north_of(CENTER, 5), minutes_ago=61)
        self.assertIsNone(await self.find())
        self.assertIsNotNone(await self.find(minutes_window=120))

    async def test_records_without_coordinates_are_ignored(self):
        self.seed(None)
        self.assertIsNone(await self.find())

    async def test_equal_distances_keep_first_in_document_order(self):
        point = north_of(CENTER, 15)
        self.seed(point, minutes_ago=10)
        newer = self.seed(point, minutes_ago=2)
        # query order is newest first
        self.assertEqual((await self.find()).id, newer)

    async def test_query_shape(self):
        repo = AsyncMock()
        repo.query_recent.return_value = []
        detector = DuplicateDetector(repo, clock=lambda: NOW)

        await detector.find_nearby_duplicate("Garbage", 1.0, 2.0)

        repo.query_recent.assert_awaited_once_with("Garbage", NOW - timedelta(minutes=60), 100)

    async def test_defaults_are_configurable(self):
        repo = AsyncMock()
        repo.query_recent.return_value = []
        detector = DuplicateDetector(repo, radius_meters=25, minutes_window=15, query_limit=10,
                                     clock=lambda: NOW)

        await detector.find_nearby_duplicate("Garbage", 1.0, 2.0)

        repo.query_recent.assert_awaited_once_with("Garbage", NOW - timedelta(minutes=15), 10)

    async def test_query_failure_raises_duplicate_check_error(self):
        repo = AsyncMock()
        repo.query_recent.side_effect = ConnectionError("offline")
        detector = DuplicateDetector(repo, clock=lambda: NOW)

        with self.assertRaises(DuplicateCheckError) as ctx:
            await detector.find_nearby_candidate("Pothole", CENTER.lat, CENTER.lng)
        self.assertIsInstance(ctx.exception.cause, ConnectionError)

    async def test_best_effort_check_treats_failure_as_no_duplicate(self):
        repo = AsyncMock()
        repo.query_recent.side_effect = ConnectionError("offline")
        detector = DuplicateDetector(repo, clock=lambda: NOW)

        with self.assertLogs("duplicate_detector", level="WARNING"):
            result = await detector.check_for_duplicate("Pothole", CENTER.lat, CENTER.lng)
        self.assertIsNone(result)

    async def test_slow_query_times_out_as_no_duplicate(self):
        async def slow(*args):
            await asyncio.sleep(1)
            return []

        repo = AsyncMock()
        repo.query_recent.side_effect = slow
        detector = DuplicateDetector(repo, timeout_seconds=0.01, clock=lambda: NOW)

        with self.assertLogs("duplicate_detector", level="WARNING"):
            self.assertIsNone(await detector.check_for_duplicate("Pothole", CENTER.lat, CENTER.lng))


if __name__ == "__main__":
    unittest.main()
