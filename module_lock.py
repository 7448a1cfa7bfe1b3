"""Advisory lock serializing problem-bank creation per module.

Two layers are taken in order: a ``threading.Lock`` keyed by module id for
threads inside this process, then an exclusive ``flock`` on a per-module lock
file for other worker processes sharing the same database. There is no
timeout; a holder that never releases blocks every creator for that module.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

logger = logging.getLogger(__name__)

_REGISTRY_LOCK = threading.Lock()
_THREAD_LOCKS: Dict[str, threading.Lock] = {}


def lock_dir() -> Path:
    configured = os.getenv("LOGIC_LOCK_DIR")
    if configured:
        return Path(configured)
    return Path(os.getenv("DB_PATH", "data.db")).resolve().parent


def lock_path(module_id: int, directory: Optional[Path] = None) -> Path:
    base = directory if directory is not None else lock_dir()
    return base / f"logic-module-{int(module_id)}.lock"


def _thread_lock(key: str) -> threading.Lock:
    with _REGISTRY_LOCK:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


@contextmanager
def module_lock(module_id: int, directory: Optional[Path] = None) -> Iterator[None]:
    """Hold the creation lock for ``module_id`` for the duration of the block."""

    path = lock_path(module_id, directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    thread_lock = _thread_lock(str(path))

    with thread_lock:
        with open(path, "a+") as fh:
            logger.debug("Waiting for module lock %s", path)
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            logger.debug("Acquired module lock %s", path)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
                logger.debug("Released module lock %s", path)
