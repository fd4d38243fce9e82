"""Process-wide store selection (STORE_BACKEND)."""

import logging
import threading
from typing import Optional

from queue_engine.config import REDIS_URL, STORE_BACKEND
from queue_engine.stores.base import TicketStore

logger = logging.getLogger(__name__)

_store: Optional[TicketStore] = None
_store_lock = threading.Lock()


def get_store() -> TicketStore:
    """Return the shared store, building it on first use."""
    global _store
    if _store is not None:
        return _store
    with _store_lock:
        if _store is None:
            if STORE_BACKEND == "memory":
                from queue_engine.stores.memory import MemoryStore

                _store = MemoryStore()
            elif STORE_BACKEND == "redis":
                from queue_engine.stores.redis_store import RedisStore

                _store = RedisStore(REDIS_URL)
            else:
                raise ValueError(f"Unknown STORE_BACKEND: {STORE_BACKEND!r}")
            logger.info("Using %s ticket store.", STORE_BACKEND)
    return _store
