"""
Connectivity Monitor
Tracks network reachability of the vehicle unit and announces reconnects.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """
    Offline iff the link is down or the internet is unreachable.
    Listeners run on every offline -> online transition.
    """

    def __init__(self):
        self._connected = True
        self._internet_reachable = True
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def is_offline(self) -> bool:
        with self._lock:
            return not (self._connected and self._internet_reachable)

    def add_listener(self, callback: Callable[[], None]):
        self._listeners.append(callback)

    def update(self, connected: bool, internet_reachable: bool = True):
        """
        Record a network status report.

        Args:
            connected: Link-level connectivity
            internet_reachable: Whether the backend is reachable over the link
        """
        with self._lock:
            was_offline = not (self._connected and self._internet_reachable)
            self._connected = bool(connected)
            self._internet_reachable = bool(internet_reachable)
            now_offline = not (self._connected and self._internet_reachable)

        if was_offline == now_offline:
            return

        if now_offline:
            logger.warning("Vehicle unit went offline")
            return

        logger.info("Vehicle unit back online")
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Reconnect listener failed: {e}", exc_info=True)
