"""Single-slot handoff from Matter read callbacks to CoAP GET handlers.

The CoAP server has to answer a GET within the handler call, but the Matter
read it triggers completes later on the Matter work queue thread. The
handler polls this slot with a bounded number of attempts instead.

Each value is tagged with the id of the read that produced it. A reader
waiting on one read discards values left over from another.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional, Tuple

from mcbridge.core.values import ScalarValue
from mcbridge.errors import ChannelTimeout

logger = logging.getLogger("mcbridge.core.channel")

Entry = Tuple[Optional[int], ScalarValue]


class ResultChannel:
    """Holds at most one unread value. Safe to use across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entry: Optional[Entry] = None
        self._published = 0
        self._overwritten = 0
        self._discarded = 0

    def publish(self, value: ScalarValue, interaction_id: Optional[int] = None) -> None:
        """Store ``value`` for read ``interaction_id``, replacing any unread value."""
        with self._lock:
            if self._entry is not None:
                self._overwritten += 1
                logger.debug("Overwriting unread result %r with %r", self._entry[1], value)
            self._entry = (interaction_id, value)
            self._published += 1

    def take(self, interaction_id: Optional[int] = None) -> Optional[ScalarValue]:
        """Atomically remove and return the current value (None if empty).

        With ``interaction_id`` set, a value published for any other read is
        dropped and None is returned.
        """
        with self._lock:
            entry, self._entry = self._entry, None
            if entry is None:
                return None
            owner, value = entry
            if interaction_id is not None and owner != interaction_id:
                self._discarded += 1
                logger.debug("Discarding result %r of read %s while waiting on %d", value, owner, interaction_id)
                return None
            return value

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    @property
    def has_value(self) -> bool:
        with self._lock:
            return self._entry is not None

    async def await_and_take(
        self, max_attempts: int, interval: float, interaction_id: Optional[int] = None
    ) -> ScalarValue:
        """Poll up to ``max_attempts`` times, ``interval`` seconds apart.

        Raises ChannelTimeout once the attempts are used up.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        for attempt in range(max_attempts):
            value = self.take(interaction_id)
            if value is not None:
                logger.debug("Result taken after %d attempt(s)", attempt + 1)
                return value
            if attempt + 1 < max_attempts:
                await asyncio.sleep(interval)
        raise ChannelTimeout(
            f"No result after {max_attempts} attempts ({interval:.2f}s interval)"
        )

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "published": self._published,
                "overwritten": self._overwritten,
                "discarded": self._discarded,
                "pending": self._entry is not None,
            }
