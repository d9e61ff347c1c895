import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import List, Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Variant = Literal["success", "error", "info", "warning"]


class Notification(BaseModel):
    id: str
    message: str
    variant: Variant
    created_at: datetime


class Notifier:
    """Transient, dismissible messages for whoever is driving the UI."""

    def __init__(self, max_items: int = 50):
        self._items = deque(maxlen=max_items)

    def notify(self, message: str, variant: Variant = "info") -> Notification:
        notification = Notification(
            id=uuid.uuid4().hex,
            message=message,
            variant=variant,
            created_at=datetime.now(timezone.utc),
        )
        self._items.append(notification)
        log = logger.warning if variant == "error" else logger.info
        log("notify[%s] %s", variant, message)
        return notification

    def list(self) -> List[Notification]:
        return list(self._items)

    def dismiss(self, notification_id: str) -> bool:
        for item in list(self._items):
            if item.id == notification_id:
                self._items.remove(item)
                return True
        return False
