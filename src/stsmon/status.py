"""Latest known state of every monitored device.

``StatusBoard`` is an update observer: feed it ``DeviceUpdate`` values
and it keeps one row per (bus, address), remembering when a device went
offline so the outage length can be reported.

Example:
    >>> from stsmon.status import StatusBoard, fmt_elapsed
    >>> board = StatusBoard()
    >>> board(update)
    >>> board.rows()[0].label()
    'ONLINE'
    >>> fmt_elapsed(187)
    '3m 07s'
"""

import logging
import threading
import time
from dataclasses import dataclass, replace

from stsmon.reading import Reading

log = logging.getLogger(__name__)


def fmt_elapsed(seconds: float) -> str:
    """Format a duration compactly, coarser as it grows.

    Example:
        >>> fmt_elapsed(42), fmt_elapsed(7500), fmt_elapsed(100800)
        ('42s', '2h 05m', '1d 4h')
    """
    s = int(seconds)
    if s < 60:
        return f"{s}s"
    if s < 3600:
        return f"{s // 60}m {s % 60:02d}s"
    if s < 86400:
        return f"{s // 3600}h {s % 3600 // 60:02d}m"
    return f"{s // 86400}d {s % 86400 // 3600}h"


@dataclass
class DeviceStatus:
    """Last update seen for one device."""

    bus: str
    address: int
    online: bool
    status: str
    reading: Reading | None
    read_time_ms: int
    cycle: int
    offline_since: float | None = None

    def label(self, now: float | None = None) -> str:
        """``"ONLINE"``, or ``"OFFLINE"`` with the outage length."""
        if self.online:
            return "ONLINE"
        if self.offline_since is None:
            return "OFFLINE"
        if now is None:
            now = time.monotonic()
        return "OFFLINE " + fmt_elapsed(now - self.offline_since)


class StatusBoard:
    """Tracks the latest status of each device across all buses.

    Thread-safe; may be subscribed directly to several buses.

    Args:
        clock: Monotonic time source in seconds (for tests).
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._rows: dict[tuple[str, int], DeviceStatus] = {}

    def __call__(self, update) -> None:
        self.apply(update)

    def apply(self, update) -> DeviceStatus:
        """Record *update* and log online/offline transitions."""
        now = self._clock()
        key = (update.bus, update.address)
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                row = DeviceStatus(update.bus, update.address, True, "NEW",
                                   None, 0, 0)
                self._rows[key] = row
            was_online = row.online
            row.online = update.online
            row.status = update.status
            row.reading = update.reading
            row.read_time_ms = update.read_time_ms
            row.cycle = update.cycle
            if was_online and not row.online:
                row.offline_since = now
                log.warning("%s: device %d went offline", update.bus,
                            update.address)
            elif row.online and not was_online:
                if row.offline_since is not None:
                    log.info("%s: device %d back online after %s", update.bus,
                             update.address, fmt_elapsed(now - row.offline_since))
                row.offline_since = None
            return replace(row)

    def forget(self, bus: str, address: int) -> bool:
        """Drop the row for a removed device."""
        with self._lock:
            return self._rows.pop((bus, address), None) is not None

    def rows(self) -> list[DeviceStatus]:
        """Snapshots of all rows, ordered by bus then address."""
        with self._lock:
            return [replace(self._rows[k]) for k in sorted(self._rows)]

    def summary(self) -> str:
        """One-line overview, e.g. ``"3 devices: 2 online, 1 offline"``."""
        rows = self.rows()
        online = sum(1 for r in rows if r.online)
        return "%d devices: %d online, %d offline" % (
            len(rows), online, len(rows) - online,
        )
