import logging
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)

OnlineListener = Callable[[], Awaitable[None]]


class ConnectivityMonitor:
    """Online/offline flag for the backing services plus an "online again" event."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[OnlineListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: OnlineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online == was_online:
            return
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        if not online:
            return
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception:
                logger.exception("Connectivity listener failed")
