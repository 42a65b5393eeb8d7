from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Hashable, Iterator


log = logging.getLogger(__name__)


@dataclass
class _KeyState:
    lock: threading.Lock
    holders: int


_GLOBAL_LOCK = threading.Lock()
_STATE_BY_KEY: dict[Hashable, _KeyState] = {}


def _acquire_state(key: Hashable) -> _KeyState:
    with _GLOBAL_LOCK:
        st = _STATE_BY_KEY.get(key)
        if st is None:
            st = _KeyState(lock=threading.Lock(), holders=0)
            _STATE_BY_KEY[key] = st
        st.holders += 1
        return st


def _release_state(key: Hashable, st: _KeyState) -> None:
    with _GLOBAL_LOCK:
        st.holders -= 1
        if st.holders <= 0 and _STATE_BY_KEY.get(key) is st:
            del _STATE_BY_KEY[key]


@contextmanager
def key_serial_lock(key: Hashable) -> Iterator[None]:
    """
    Serialize work per key inside this process, e.g. bookings on one
    (depot, instrument, currency) lot key. Distinct keys never block each other.
    """
    st = _acquire_state(key)
    if st.lock.locked():
        log.debug("Waiting for booking lock on %s", key)
    st.lock.acquire()
    try:
        yield
    finally:
        st.lock.release()
        _release_state(key, st)


def active_keys() -> list[Hashable]:
    with _GLOBAL_LOCK:
        return list(_STATE_BY_KEY.keys())
