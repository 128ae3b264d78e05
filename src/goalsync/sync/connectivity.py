# src/goalsync/sync/connectivity.py
"""
Network reachability signal.

The host application (or a platform reachability check) calls :meth:`NetworkMonitor.set_online`
whenever reachability changes. Subscribers are only notified on actual
transitions. Listener failures are logged and never reach the caller.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Union[None, Awaitable[None]]]


class NetworkMonitor:
    """
    Boolean online/offline source.

    Example:
        monitor = NetworkMonitor(online=False)
        unsubscribe = monitor.subscribe(on_change)
        await monitor.set_online(True)   # on_change(True) is awaited
        unsubscribe()
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_online(self, online: bool) -> bool:
        """
        Update reachability.

        Returns:
            True if the state changed and listeners were notified
        """
        if online == self._online:
            return False
        self._online = online
        logger.info("Network is now %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                outcome = listener(online)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Connectivity listener %r failed: %s", listener, e, exc_info=True)
        return True

    async def check_reachability(self, check: Callable[[], Awaitable[bool]], timeout: Optional[float] = 5.0) -> bool:
        """
        Run a reachability check and apply its result.

        A check that times out or fails with an OS-level error counts as offline.
        """
        try:
            online = bool(await asyncio.wait_for(check(), timeout=timeout))
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug("Reachability check failed: %s", e)
            online = False
        await self.set_online(online)
        return online
