"""
Durable queue of reports that could not be sent while offline.

Drafts live in a small key-value store (a JSON file on disk by default) and are
replayed in order through the normal submission path once connectivity
returns, and once at startup.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import re
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from config import Config
from connectivity import ConnectivityMonitor
from errors import OfflineQueueError
from models import Attachment, DraftImage, IssuePayload, OfflineIssueDraft
from notifications import Notifier

logger = logging.getLogger(__name__)


# ------------------ Key-value storage ------------------

class KeyValueStorage(ABC):
    """String key -> string value store. Raises OSError when unavailable."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...


class JsonFileStorage(KeyValueStorage):

    def __init__(self, path: str = Config.OFFLINE_QUEUE_PATH):
        self.path = path

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def get_item(self, key):
        try:
            return self._load().get(key)
        except ValueError as exc:
            raise ValueError(f"Corrupt storage file {self.path}") from exc

    def set_item(self, key, value):
        try:
            data = self._load()
        except ValueError:
            # covers both JSONDecodeError and UnicodeDecodeError
            logger.warning("Overwriting corrupt storage file %s", self.path)
            data = {}
        data[key] = value

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)


class MemoryStorage(KeyValueStorage):

    def __init__(self, available: bool = True):
        self.available = available
        self.items: Dict[str, str] = {}

    def _check(self):
        if not self.available:
            raise OSError("Local storage is disabled")

    def get_item(self, key):
        self._check()
        return self.items.get(key)

    def set_item(self, key, value):
        self._check()
        self.items[key] = value


# ------------------ Inline image encoding ------------------

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]*)(;[^,]*)?,(?P<data>.*)$", re.DOTALL)


def attachment_to_draft_image(attachment: Attachment) -> DraftImage:
    encoded = base64.b64encode(attachment.data).decode("ascii")
    return DraftImage(
        name=attachment.name,
        type=attachment.content_type,
        data_url=f"data:{attachment.content_type};base64,{encoded}",
    )


def draft_image_to_attachment(image: DraftImage) -> Attachment:
    match = _DATA_URL.match(image.data_url)
    if not match:
        raise ValueError("Draft image is not a data URL")
    mime = image.type or match.group("mime") or "application/octet-stream"
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except binascii.Error as exc:
        raise ValueError("Draft image data is not valid base64") from exc
    return Attachment(name=image.name or "attachment", content_type=mime, data=data)


# ------------------ Queue ------------------

class OfflineDraftQueue:

    def __init__(self, storage: Optional[KeyValueStorage] = None, key: str = Config.OFFLINE_QUEUE_KEY):
        self.storage = storage if storage is not None else JsonFileStorage()
        self.key = key
        # read-modify-write must not interleave across threads
        self._lock = threading.RLock()

    def _read(self, strict: bool) -> List[OfflineIssueDraft]:
        try:
            raw = self.storage.get_item(self.key)
        except OSError as exc:
            if strict:
                raise OfflineQueueError("Offline storage is unavailable") from exc
            logger.warning("Unable to read offline queue: %s", exc)
            return []
        except ValueError as exc:
            logger.warning("Unable to read offline queue: %s", exc)
            return []

        if not raw:
            return []
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Offline queue is corrupt, starting empty: %s", exc)
            return []

        drafts = []
        for item in items if isinstance(items, list) else []:
            try:
                drafts.append(OfflineIssueDraft.model_validate(item))
            except SchemaError as exc:
                logger.warning("Dropping unreadable offline draft: %s", exc)
        return drafts

    def _write(self, drafts: List[OfflineIssueDraft]) -> None:
        value = json.dumps([draft.model_dump(mode="json") for draft in drafts])
        try:
            self.storage.set_item(self.key, value)
        except (OSError, ValueError) as exc:
            raise OfflineQueueError("Unable to persist offline queue") from exc

    def queue_draft(self, payload: IssuePayload, file: Optional[Attachment] = None) -> OfflineIssueDraft:
        """Append a draft. Raises OfflineQueueError if it could not be stored."""
        image = None
        if file is not None:
            try:
                image = attachment_to_draft_image(file)
            except (TypeError, ValueError):
                logger.warning("Could not encode attachment for offline draft", exc_info=True)

        draft = OfflineIssueDraft(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            payload=payload,
            image=image,
        )
        with self._lock:
            drafts = self._read(strict=True)
            drafts.append(draft)
            self._write(drafts)
        logger.info("Queued offline draft %s (%d pending)", draft.id, len(drafts))
        return draft

    def list_queued_drafts(self) -> List[OfflineIssueDraft]:
        with self._lock:
            return self._read(strict=False)

    def remove_draft(self, draft_id: str) -> None:
        with self._lock:
            drafts = self._read(strict=True)
            remaining = [draft for draft in drafts if draft.id != draft_id]
            if len(remaining) != len(drafts):
                self._write(remaining)


# ------------------ Replay ------------------

SubmitFn = Callable[[IssuePayload, Optional[Attachment]], Awaitable[str]]


class SyncReport(BaseModel):
    delivered: List[str] = Field(default_factory=list)
    issue_ids: List[str] = Field(default_factory=list)
    failed: Optional[str] = None
    skipped: bool = False


class OfflineSync:
    """
    Replays queued drafts through ``submit``, strictly one at a time.

    Stops at the first failure and leaves that draft (and everything after it)
    queued for the next connectivity or startup trigger.
    """

    def __init__(self, queue: OfflineDraftQueue, submit: SubmitFn,
                 connectivity: ConnectivityMonitor, notifier: Optional[Notifier] = None):
        self.queue = queue
        self.submit = submit
        self.connectivity = connectivity
        self.notifier = notifier or Notifier()
        self._lock = asyncio.Lock()
        self._detach = None

    @property
    def syncing(self) -> bool:
        return self._lock.locked()

    def attach(self) -> None:
        if self._detach is None:
            self._detach = self.connectivity.add_listener(self.process_queue)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    async def process_queue(self) -> SyncReport:
        if not self.connectivity.is_online or self._lock.locked():
            return SyncReport(skipped=True)

        async with self._lock:
            report = SyncReport()
            drafts = self.queue.list_queued_drafts()
            if drafts:
                logger.info("Replaying %d offline draft(s)", len(drafts))

            for draft in drafts:
                try:
                    attachment = draft_image_to_attachment(draft.image) if draft.image else None
                    issue_id = await self.submit(draft.payload, attachment)
                except Exception:
                    logger.exception("Failed to sync offline draft %s", draft.id)
                    self.notifier.notify("Failed to sync offline reports.", "error")
                    report.failed = draft.id
                    break

                try:
                    self.queue.remove_draft(draft.id)
                except OfflineQueueError:
                    logger.exception("Draft %s was submitted as %s but could not be removed", draft.id, issue_id)
                    self.notifier.notify("Offline report submitted, but the local queue could not be updated.", "error")
                    report.failed = draft.id
                    break

                report.delivered.append(draft.id)
                report.issue_ids.append(issue_id)
                self.notifier.notify("Offline report submitted.", "success")

            return report
