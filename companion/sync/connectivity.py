"""Connectivity monitor.

Platform network callbacks report every state change, often repeating the
same state. The monitor reduces them to online/offline edges and only
notifies subscribers when the state actually flips.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


@dataclass(frozen=True)
class NetworkState:
    """A raw network report.

    ``is_internet_reachable`` is None while the platform has not decided yet,
    which counts as offline.
    """

    is_connected: bool
    is_internet_reachable: Optional[bool] = None

    @property
    def is_online(self) -> bool:
        return bool(self.is_connected) and self.is_internet_reachable is True


class ConnectivityMonitor:
    """Tracks online state and fans out offline/online edges."""

    def __init__(self):
        self._online = False
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register an edge listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def update(self, state: NetworkState) -> bool:
        """Apply a network report.

        Returns:
            True if the online state changed
        """
        online = state.is_online
        if online == self._online:
            return False

        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}", exc_info=True)
        return True

    async def probe(self, check: Callable[[], Awaitable[bool]]) -> bool:
        """Ask ``check`` whether the backend is reachable and apply the answer."""
        reachable = await check()
        await self.update(NetworkState(is_connected=True, is_internet_reachable=reachable))
        return self._online
