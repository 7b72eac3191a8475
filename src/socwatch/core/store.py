"""Single-slot hand-off of Snapshots from the sampling thread to the renderer."""

from __future__ import annotations

import logging
import threading

from socwatch.models.runtime import Snapshot

logger = logging.getLogger("socwatch.store")


class SnapshotStore:
    """The only state shared between producer and consumer.

    Snapshots are immutable, so a reader holding one can never see it change.
    The slot only moves forward: publishing an older or equal generation is a
    no-op, which keeps successive reads monotonic.
    """

    def __init__(self, initial: Snapshot | None = None) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._snapshot = initial if initial is not None else Snapshot()

    def publish(self, snapshot: Snapshot) -> bool:
        """Replace the slot if ``snapshot`` is newer. Returns True if replaced."""
        with self._cond:
            if snapshot.generation <= self._snapshot.generation:
                return False
            self._snapshot = snapshot
            self._cond.notify_all()
        return True

    def latest(self) -> Snapshot:
        with self._cond:
            return self._snapshot

    @property
    def generation(self) -> int:
        return self.latest().generation

    def wait_for(self, after_generation: int, timeout: float | None = None) -> Snapshot:
        """Block until a generation newer than ``after_generation`` is published.

        Returns the latest snapshot either way; compare its generation to tell
        whether the wait timed out.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._snapshot.generation > after_generation, timeout=timeout
            )
            return self._snapshot
