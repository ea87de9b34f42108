"""
IndexRegistry: process-wide cache of AnnIndex instances, one per
(tenant, modality, dim, space). Every index is created and loaded through
the registry so there is exactly one live copy per key.

Shutdown: a single SIGINT/SIGTERM handler pair plus one atexit hook is
installed per process (not per index or per registry). On any of them,
every live registry flushes its dirty indexes. An index already flushed
is clean, so overlapping hooks do not write it twice.
"""

import atexit
import signal
import threading
import weakref
from pathlib import Path
from typing import Dict, List

from loguru import logger

from config.settings import ANN_DIR, ANN_INITIAL_CAPACITY, ANN_SPACE
from modules.indexing.ann_index import AnnIndex, index_key

_live_registries: "weakref.WeakSet[IndexRegistry]" = weakref.WeakSet()
_hooks_lock = threading.Lock()
_hooks_installed = False
_previous_handlers: Dict[int, object] = {}


def _flush_live_registries():
    for registry in list(_live_registries):
        try:
            registry.flush_all()
        except Exception as e:
            # Keep going so the remaining registries still get flushed
            logger.error(f"IndexRegistry: flush on shutdown failed: {e}")


def _handle_signal(signum, frame):
    logger.info(f"IndexRegistry: received signal {signum}, flushing ANN indexes")
    _flush_live_registries()

    previous = _previous_handlers.get(signum)
    if callable(previous):
        previous(signum, frame)
    elif signum == signal.SIGINT:
        raise KeyboardInterrupt
    else:
        raise SystemExit(128 + signum)


def install_shutdown_hooks() -> bool:
    """
    Register the flush-on-exit hooks once per process.
    Signal handlers can only be set from the main thread; atexit always is.
    Returns True if this call installed them.
    """
    global _hooks_installed
    with _hooks_lock:
        if _hooks_installed:
            return False
        _hooks_installed = True

        atexit.register(_flush_live_registries)
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                _previous_handlers[signum] = signal.getsignal(signum)
                signal.signal(signum, _handle_signal)
        else:
            logger.warning("IndexRegistry: not on main thread, relying on atexit only")

        logger.debug("IndexRegistry: shutdown hooks installed")
        return True


class IndexRegistry:
    """
    Owns the live AnnIndex objects for one index directory.

    Constructed at process start (module-level `index_registry`, or one per
    app/test), closed at process stop with close().
    """

    def __init__(
        self,
        index_dir: Path = ANN_DIR,
        capacity: int = ANN_INITIAL_CAPACITY,
        install_hooks: bool = True,
        **index_options,
    ):
        self.index_dir = Path(index_dir)
        self.capacity = capacity
        self._install_hooks = install_hooks
        self._index_options = index_options
        self._indexes: Dict[str, AnnIndex] = {}
        self._lock = threading.Lock()
        _live_registries.add(self)

    def get(self, tenant_id: str, modality: str, dim: int, space: str = ANN_SPACE) -> AnnIndex:
        """Return the loaded index for the key, creating it on first use."""
        key = index_key(tenant_id, modality, dim, space)
        with self._lock:
            index = self._indexes.get(key)
            if index is None:
                index = AnnIndex(
                    tenant_id, modality, dim, space,
                    index_dir=self.index_dir,
                    **self._index_options,
                )
                index.load_or_create(self.capacity)
                self._indexes[key] = index
                if self._install_hooks:
                    install_shutdown_hooks()
            return index

    def flush_all(self) -> int:
        """Save every dirty index now. Returns how many were written."""
        with self._lock:
            indexes = list(self._indexes.values())
        flushed = 0
        for index in indexes:
            if index.is_dirty:
                index.save_now()
                flushed += 1
        if flushed:
            logger.info(f"IndexRegistry: flushed {flushed} ANN index(es)")
        return flushed

    def close(self):
        self.flush_all()
        with self._lock:
            self._indexes.clear()
        _live_registries.discard(self)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._indexes.keys())

    def __contains__(self, key: str) -> bool:
        return key in self._indexes

    def __len__(self) -> int:
        return len(self._indexes)

    def status(self) -> dict:
        with self._lock:
            return {
                key: {"size": index.size, "capacity": index.capacity, "dirty": index.is_dirty}
                for key, index in self._indexes.items()
            }


# Module-level registry for the server process
index_registry = IndexRegistry()
