"""
Fire-and-forget domain events (issue_created, issue_resolved, user_verified).

Sinks may be slow or down; ``EventTracker.track`` never raises and never makes
the caller wait on delivery.
"""

import asyncio
import logging
from typing import Any, Dict, Literal, Optional, Set

from fastapi.concurrency import run_in_threadpool
from firebase_admin import firestore

from config import Config

logger = logging.getLogger(__name__)

CivicFixEvent = Literal["issue_created", "issue_resolved", "user_verified"]


def normalize_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty values and flatten to str/number, the shape analytics backends accept."""
    normalized = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            normalized[key] = 1 if value else 0
        elif isinstance(value, (int, float, str)):
            normalized[key] = value
        else:
            normalized[key] = str(value)
    return normalized


class LoggingEventSink:
    async def emit(self, name: str, params: Dict[str, Any]) -> None:
        logger.info("event %s %s", name, params)


class FirestoreEventSink:
    def __init__(self, db=None, collection: str = Config.EVENTS_COLLECTION):
        self._db = db
        self.collection_name = collection

    async def emit(self, name, params):
        if self._db is None:
            from firebase_config import get_db
            self._db = get_db()

        def run():
            self._db.collection(self.collection_name).add({
                "name": name,
                "params": params,
                "created_at": firestore.SERVER_TIMESTAMP,
            })

        await run_in_threadpool(run)


class EventTracker:

    def __init__(self, sink=None):
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def track(self, name: CivicFixEvent, params: Optional[Dict[str, Any]] = None) -> None:
        if self.sink is None:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(name, normalize_params(params)))
        except Exception:
            logger.warning("civicfix:analytics-log-failed %s", name, exc_info=True)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, name, params):
        try:
            await self.sink.emit(name, params)
        except Exception:
            logger.warning("civicfix:analytics-log-failed %s", name, exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight events; used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def build_tracker(kind: str = Config.TELEMETRY_SINK) -> EventTracker:
    if kind == "firestore":
        return EventTracker(FirestoreEventSink())
    if kind == "none":
        return EventTracker(None)
    return EventTracker(LoggingEventSink())
