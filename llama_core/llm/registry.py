"""Opaque integer handles for sessions owned by an outer layer.

Handle layout: ``generation << 20 | slot``. Slots are reused; the
generation counter is not, so a stale handle never resolves to a newer
session that took over its slot.
"""
from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Dict, List, Tuple

from .exceptions import InvalidHandle
from .session import LlamaSession

logger = logging.getLogger(__name__)

_SLOT_BITS = 20
_SLOT_MASK = (1 << _SLOT_BITS) - 1


class SessionRegistry:
    def __init__(self, factory: Callable[[], LlamaSession] | None = None) -> None:
        self._factory = factory or LlamaSession
        self._lock = threading.Lock()
        self._slots: Dict[int, Tuple[int, LlamaSession]] = {}
        self._free: List[int] = []
        self._next_slot = 0
        self._generations = itertools.count(1)

    def register(self, session: LlamaSession) -> int:
        with self._lock:
            if self._free:
                slot = self._free.pop()
            else:
                slot = self._next_slot
                self._next_slot += 1
                if slot > _SLOT_MASK:
                    raise RuntimeError("session registry exhausted")
            gen = next(self._generations)
            self._slots[slot] = (gen, session)
        handle = (gen << _SLOT_BITS) | slot
        logger.debug("registered session %s as handle %d", session.session_id, handle)
        return handle

    def create(self) -> int:
        return self.register(self._factory())

    def get(self, handle: int) -> LlamaSession:
        slot, gen = handle & _SLOT_MASK, handle >> _SLOT_BITS
        with self._lock:
            entry = self._slots.get(slot)
        if entry is None or entry[0] != gen or handle <= 0:
            raise InvalidHandle(f"Invalid session handle: {handle}")
        return entry[1]

    def destroy(self, handle: int) -> None:
        """Forget `handle` and close its session (unknown handles raise)."""
        slot, gen = handle & _SLOT_MASK, handle >> _SLOT_BITS
        with self._lock:
            entry = self._slots.get(slot)
            if entry is None or entry[0] != gen or handle <= 0:
                raise InvalidHandle(f"Invalid session handle: {handle}")
            del self._slots[slot]
            self._free.append(slot)
        # outside the registry lock: close() may wait on engine frees
        entry[1].close()
        logger.debug("destroyed session handle %d", handle)

    def handles(self) -> List[int]:
        with self._lock:
            return [(g << _SLOT_BITS) | s for s, (g, _) in self._slots.items()]

    def clear(self) -> None:
        with self._lock:
            sessions = [s for _, s in self._slots.values()]
            self._slots.clear()
            self._free.clear()
            self._next_slot = 0
        for s in sessions:
            s.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


registry = SessionRegistry()

__all__ = ["SessionRegistry", "registry"]
