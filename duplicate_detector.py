import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config import Config
from errors import DuplicateCheckError
from geo_math import GeoPoint, bounding_box, distance_meters, is_within_bounding_box
from models import DuplicateCandidate, IssueRecord, IssueStatus
from repository import IssueRepository

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Finds the closest open report of the same category near a new one."""

    def __init__(
        self,
        repository: IssueRepository,
        radius_meters: float = Config.DUPLICATE_RADIUS_METERS,
        minutes_window: float = Config.DUPLICATE_WINDOW_MINUTES,
        query_limit: int = Config.DUPLICATE_QUERY_LIMIT,
        timeout_seconds: Optional[float] = Config.DUPLICATE_CHECK_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.radius_meters = radius_meters
        self.minutes_window = minutes_window
        self.query_limit = query_limit
        self.timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def find_nearby_candidate(
        self,
        category: str,
        lat: float,
        lng: float,
        radius_meters: Optional[float] = None,
        minutes_window: Optional[float] = None,
    ) -> Optional[DuplicateCandidate]:
        radius = self.radius_meters if radius_meters is None else radius_meters
        window = self.minutes_window if minutes_window is None else minutes_window

        center = GeoPoint(lat, lng)
        box = bounding_box(center, radius)
        cutoff = self._clock() - timedelta(minutes=window)

        try:
            # capped on purpose; very old reports past the cap are not considered
            recent = await asyncio.wait_for(
                self.repository.query_recent(category, cutoff, self.query_limit),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            raise DuplicateCheckError("Duplicate lookup failed", cause=exc) from exc

        closest = None
        for issue in recent:
            if issue.status == IssueStatus.RESOLVED:
                continue
            coords = issue.coordinates()
            if coords is None or not is_within_bounding_box(coords, box):
                continue
            distance = distance_meters(center, coords)
            if distance > radius:
                continue
            # strict < keeps the first of equally distant records
            if closest is None or distance < closest.distance_meters:
                closest = DuplicateCandidate(issue=issue, distance_meters=distance)

        return closest

    async def find_nearby_duplicate(self, category: str, lat: float, lng: float,
                                    radius_meters: Optional[float] = None,
                                    minutes_window: Optional[float] = None) -> Optional[IssueRecord]:
        candidate = await self.find_nearby_candidate(category, lat, lng, radius_meters, minutes_window)
        return candidate.issue if candidate else None

    async def check_for_duplicate(self, category: str, lat: float, lng: float) -> Optional[DuplicateCandidate]:
        """
        Best-effort wrapper used by the submission flow.

        A failed lookup is logged and reported as "no duplicate": duplicate
        detection is advisory and must never block a submission.
        """
        try:
            return await self.find_nearby_candidate(category, lat, lng)
        except DuplicateCheckError as exc:
            logger.warning("Duplicate detection failed, continuing without it: %s", exc.cause)
            return None
