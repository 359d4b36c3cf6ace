import time
import logging
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class TTLStore:
    """
    Process-wide key/value store with per-entry expiry.

    Entries are evicted lazily when read after their deadline; nothing sweeps in the background.
    Reads and writes are plain dict operations, so concurrent tasks never wait on each other.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Tuple[Any, bool]:
        entry = self._entries.get(key)
        if entry is None:
            return None, False

        value, expires_at = entry
        if self._clock() >= expires_at:
            # Expired entries count as absent
            self._entries.pop(key, None)
            logger.debug(f"⌛ Cache entry expired: {key}")
            return None, False
        return value, True

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self):
        return len(self._entries)
