"""
Record store access for issues.

``IssueRepository`` is the seam between the core and whatever holds the
records: one-shot queries plus subscribe-for-changes. Firestore backs it in
production; ``InMemoryIssueRepository`` backs tests and local runs.
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from firebase_admin import firestore

from config import Config
from errors import IssueNotFoundError
from models import IssueRecord, IssueStatus, map_issue_data

logger = logging.getLogger(__name__)

Listener = Callable[[List[IssueRecord]], None]
Unsubscribe = Callable[[], None]


class IssueRepository(ABC):

    @abstractmethod
    async def query_recent(self, category: str, since: datetime, limit: int) -> List[IssueRecord]:
        """Issues of ``category`` created at or after ``since``, newest first, at most ``limit``."""

    @abstractmethod
    async def list_issues(self, user_id: Optional[str] = None,
                          status: Optional[IssueStatus] = None) -> List[IssueRecord]:
        ...

    @abstractmethod
    async def get(self, issue_id: str) -> Optional[IssueRecord]:
        ...

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> str:
        """Store a new document; the store stamps created_at/updated_at. Returns the new id."""

    @abstractmethod
    async def update(self, issue_id: str, updates: Dict[str, Any],
                     history: Optional[List[Dict[str, Any]]] = None) -> None:
        ...

    @abstractmethod
    async def toggle_upvote(self, issue_id: str, user_id: str) -> int:
        """Atomically add or remove ``user_id``'s upvote. Returns +1 or -1."""

    @abstractmethod
    def subscribe(self, callback: Listener, user_id: Optional[str] = None) -> Unsubscribe:
        ...


def _toggled_votes(data: Dict[str, Any], user_id: str):
    upvotes = data.get("upvotes") if isinstance(data.get("upvotes"), int) else 0
    upvoted_by = list(data.get("upvoted_by") or [])
    if user_id in upvoted_by:
        upvoted_by = [uid for uid in upvoted_by if uid != user_id]
        return {"upvotes": max(0, upvotes - 1), "upvoted_by": upvoted_by}, -1
    upvoted_by.append(user_id)
    return {"upvotes": upvotes + 1, "upvoted_by": upvoted_by}, 1


# ------------------ Firestore ------------------

class FirestoreIssueRepository(IssueRepository):

    def __init__(self, db=None, collection: str = Config.ISSUES_COLLECTION):
        self._db = db
        self.collection_name = collection

    @property
    def db(self):
        if self._db is None:
            from firebase_config import get_db
            self._db = get_db()
        return self._db

    def _collection(self):
        return self.db.collection(self.collection_name)

    def _filtered(self, user_id=None, status=None):
        query = self._collection()
        if user_id:
            query = query.where("user_id", "==", user_id)
        if status:
            query = query.where("status", "==", IssueStatus(status).value)
        return query.order_by("created_at", direction=firestore.Query.DESCENDING)

    async def query_recent(self, category, since, limit):
        def run():
            docs = self._collection()\
                .where("category", "==", category)\
                .where("created_at", ">=", since)\
                .order_by("created_at", direction=firestore.Query.DESCENDING)\
                .limit(limit)\
                .stream()
            return [map_issue_data(doc.id, doc.to_dict()) for doc in docs]

        return await run_in_threadpool(run)

    async def list_issues(self, user_id=None, status=None):
        def run():
            docs = self._filtered(user_id, status).stream()
            return [map_issue_data(doc.id, doc.to_dict()) for doc in docs]

        return await run_in_threadpool(run)

    async def get(self, issue_id):
        def run():
            doc = self._collection().document(issue_id).get()
            if not doc.exists:
                return None
            return map_issue_data(doc.id, doc.to_dict())

        return await run_in_threadpool(run)

    async def create(self, data):
        document = dict(data)
        document["created_at"] = firestore.SERVER_TIMESTAMP
        document["updated_at"] = firestore.SERVER_TIMESTAMP

        def run():
            _, doc_ref = self._collection().add(document)
            return doc_ref.id

        return await run_in_threadpool(run)

    async def update(self, issue_id, updates, history=None):
        update_data = dict(updates)
        update_data["updated_at"] = firestore.SERVER_TIMESTAMP
        if history:
            update_data["status_history"] = firestore.ArrayUnion(history)

        def run():
            self._collection().document(issue_id).update(update_data)

        await run_in_threadpool(run)

    async def toggle_upvote(self, issue_id, user_id):
        issue_ref = self._collection().document(issue_id)

        @firestore.transactional
        def toggle(transaction):
            snapshot = issue_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise IssueNotFoundError(issue_id)
            changes, delta = _toggled_votes(snapshot.to_dict() or {}, user_id)
            transaction.update(issue_ref, changes)
            return delta

        return await run_in_threadpool(toggle, self.db.transaction())

    def subscribe(self, callback, user_id=None):
        # on_snapshot calls back from a Firestore watch thread
        def on_snapshot(docs, changes, read_time):
            callback([map_issue_data(doc.id, doc.to_dict()) for doc in docs])

        watch = self._filtered(user_id).on_snapshot(on_snapshot)
        return watch.unsubscribe


# ------------------ In-memory ------------------

class InMemoryIssueRepository(IssueRepository):
    """Dict-backed store with the same semantics as Firestore, for tests and local runs."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._listeners: Dict[str, tuple] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def __len__(self):
        return len(self._docs)

    def seed(self, issue_id: Optional[str] = None, **data) -> str:
        """Insert a raw document as-is (created_at defaults to now)."""
        issue_id = issue_id or uuid.uuid4().hex
        data.setdefault("created_at", self._clock())
        self._docs[issue_id] = data
        self._notify()
        return issue_id

    def raw(self, issue_id: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._docs.get(issue_id))

    def _newest_first(self, predicate=lambda data: True):
        items = [(issue_id, data) for issue_id, data in self._docs.items() if predicate(data)]
        items.sort(key=lambda item: item[1]["created_at"], reverse=True)
        return [map_issue_data(issue_id, copy.deepcopy(data)) for issue_id, data in items]

    def _matcher(self, user_id=None, status=None):
        status_value = IssueStatus(status).value if status else None

        def match(data):
            if user_id and data.get("user_id") != user_id:
                return False
            if status_value and data.get("status") != status_value:
                return False
            return True

        return match

    def _notify(self):
        for callback, user_id in list(self._listeners.values()):
            callback(self._newest_first(self._matcher(user_id)))

    async def query_recent(self, category, since, limit):
        records = self._newest_first(
            lambda data: data.get("category") == category and data["created_at"] >= since
        )
        return records[:limit]

    async def list_issues(self, user_id=None, status=None):
        return self._newest_first(self._matcher(user_id, status))

    async def get(self, issue_id):
        if issue_id not in self._docs:
            return None
        return map_issue_data(issue_id, copy.deepcopy(self._docs[issue_id]))

    async def create(self, data):
        issue_id = uuid.uuid4().hex
        now = self._clock()
        document = copy.deepcopy(data)
        document["created_at"] = now
        document["updated_at"] = now
        self._docs[issue_id] = document
        self._notify()
        return issue_id

    async def update(self, issue_id, updates, history=None):
        if issue_id not in self._docs:
            raise IssueNotFoundError(issue_id)
        document = self._docs[issue_id]
        document.update(copy.deepcopy(updates))
        document["updated_at"] = self._clock()
        if history:
            existing = document.setdefault("status_history", [])
            for entry in history:
                if entry not in existing:
                    existing.append(copy.deepcopy(entry))
        self._notify()

    async def toggle_upvote(self, issue_id, user_id):
        if issue_id not in self._docs:
            raise IssueNotFoundError(issue_id)
        changes, delta = _toggled_votes(self._docs[issue_id], user_id)
        self._docs[issue_id].update(changes)
        self._notify()
        return delta

    def subscribe(self, callback, user_id=None):
        token = uuid.uuid4().hex
        self._listeners[token] = (callback, user_id)
        callback(self._newest_first(self._matcher(user_id)))

        def unsubscribe():
            self._listeners.pop(token, None)

        return unsubscribe
