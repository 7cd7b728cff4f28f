"""Poll cycle and online/offline tracking for the devices of one bus.

Each call to ``Poller.poll_all()`` is one cycle: every registered
device is visited in registration order and produces exactly one
``DeviceUpdate``.  A device that keeps failing is marked offline after
``offline_threshold`` consecutive failures and from then on is only
polled every N cycles, N doubling after each further failure (capped at
``MAX_OFFLINE_INTERVAL``).  One good read brings it straight back to
full rate.

Example:
    >>> from stsmon.poller import Poller
    >>> poller = Poller(bus, [1, 2], name="/dev/ttyUSB0")
    >>> updates = poller.poll_all()
    >>> [(u.address, u.status) for u in updates]
    [(1, 'OK'), (2, 'TIMEOUT')]
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import NamedTuple

from stsmon.config import MAX_OFFLINE_INTERVAL, OFFLINE_INTERVAL, OFFLINE_THRESHOLD
from stsmon.device import Device
from stsmon.reading import NO_DATA, REG_BASE, REG_COUNT, Reading, fmt_reading
from stsmon.transport import FunctionKind

log = logging.getLogger(__name__)

STATUS_OK = "OK"
STATUS_BACK_ONLINE = "OK (BACK ONLINE)"
STATUS_TIMEOUT = "TIMEOUT"
STATUS_SET_OFFLINE = "TIMEOUT [SET OFFLINE]"
STATUS_STILL_OFFLINE = "TIMEOUT (STILL OFFLINE)"
STATUS_SKIP = "OFFLINE (SKIP)"


def next_interval(current: int) -> int:
    """Return the offline poll interval that follows *current*.

    Example:
        >>> next_interval(0), next_interval(5), next_interval(40)
        (2, 10, 60)
    """
    if current <= 0:
        return 2
    return min(current * 2, MAX_OFFLINE_INTERVAL)


@dataclass(frozen=True)
class DeviceUpdate:
    """Result of one device in one cycle.

    ``reading`` is None when nothing was read this cycle.  ``timed_out``
    is the transport's own timeout signal; ``short_read`` marks a failed
    read where the device did answer (exception response, bad frame,
    too few registers).
    """

    bus: str
    address: int
    online: bool
    reading: Reading | None
    status: str
    read_time_ms: int
    cycle: int
    timed_out: bool
    short_read: bool = False

    @property
    def values(self) -> Reading:
        """The reading, or ``NO_DATA`` (all -1) when there is none."""
        return self.reading if self.reading is not None else NO_DATA


class EntryState(NamedTuple):
    """Read-only view of one device's polling state."""

    address: int
    online: bool
    consecutive_timeouts: int
    offline_cycles: int
    offline_interval: int


@dataclass
class _Entry:
    device: Device
    offline_interval: int
    consecutive_timeouts: int = 0
    offline_cycles: int = 0
    reading: Reading | None = None
    read_time_ms: int = 0
    removed: bool = False


class Poller:
    """Polls the devices of one bus and tracks their liveness.

    ``add_device`` and ``remove_device`` may be called from any thread
    while a cycle runs; changes apply from the next device visited.

    Args:
        bus: Transport with ``read_block(function, address, start,
            count)``.
        addresses: Initial device addresses, in polling order.
        name: Bus name carried in every update (usually the port).
        offline_interval: Cycles an offline device is skipped at first,
            and the value restored when it comes back.
        offline_threshold: Consecutive failures that take an online
            device offline.
    """

    def __init__(self, bus, addresses=(), name: str = "bus",
                 offline_interval: int = OFFLINE_INTERVAL,
                 offline_threshold: int = OFFLINE_THRESHOLD):
        if offline_interval < 1:
            raise ValueError("offline_interval must be >= 1")
        if offline_threshold < 1:
            raise ValueError("offline_threshold must be >= 1")
        self._bus = bus
        self.name = name
        self._offline_interval = offline_interval
        self._offline_threshold = offline_threshold
        self._lock = threading.Lock()
        self._entries: list[_Entry] = []
        self._subscribers = []
        self._cycle = 0
        for addr in addresses:
            self.add_device(addr)

    @property
    def cycle(self) -> int:
        """Number of completed cycles."""
        return self._cycle

    @property
    def addresses(self) -> list[int]:
        with self._lock:
            return [e.device.address for e in self._entries]

    def subscribe(self, callback) -> None:
        """Call *callback(update)* for every update, in order."""
        with self._lock:
            self._subscribers = self._subscribers + [callback]

    def add_device(self, address: int) -> bool:
        """Register a device.  Returns False if already present."""
        device = Device(address)
        with self._lock:
            if any(e.device.address == address for e in self._entries):
                return False
            self._entries = self._entries + [
                _Entry(device, self._offline_interval)
            ]
        log.debug("%s: added device %d", self.name, address)
        return True

    def remove_device(self, address: int) -> bool:
        """Unregister a device.  Returns False if it was not present."""
        with self._lock:
            for i, entry in enumerate(self._entries):
                if entry.device.address == address:
                    entry.removed = True
                    self._entries = self._entries[:i] + self._entries[i + 1:]
                    break
            else:
                return False
        log.debug("%s: removed device %d", self.name, address)
        return True

    def state(self, address: int) -> EntryState | None:
        """Return the polling state of *address*, or None if unknown."""
        with self._lock:
            for e in self._entries:
                if e.device.address == address:
                    return EntryState(
                        e.device.address, e.device.online,
                        e.consecutive_timeouts, e.offline_cycles,
                        e.offline_interval,
                    )
        return None

    def poll_all(self, cancel: threading.Event | None = None) -> list[DeviceUpdate]:
        """Run one cycle over every registered device.

        Each state transition is applied under the lock, so ``state()``
        never sees a half-updated entry.  The lock is not held across
        the transport read or while observers run.

        Args:
            cancel: Optional event; once set, no further device is
                visited and the cycle is left uncounted.

        Returns:
            list[DeviceUpdate]: One update per device visited, in
                registration order.
        """
        with self._lock:
            entries = self._entries
        cycle_no = self._cycle + 1
        updates = []

        for e in entries:
            if cancel is not None and cancel.is_set():
                log.debug("%s: cycle %d abandoned", self.name, cycle_no)
                return updates
            with self._lock:
                if e.removed:
                    continue
                update = self._skip(e, cycle_no)
            if update is not None:
                updates.append(self._notify(update))
                continue

            t0 = time.monotonic()
            reading = e.device.poll(
                self._bus, FunctionKind.HOLDING, REG_BASE, REG_COUNT
            )
            read_time_ms = int((time.monotonic() - t0) * 1000)

            with self._lock:
                e.read_time_ms = read_time_ms
                if reading is None or e.device.last_timed_out:
                    update = self._on_failure(e, cycle_no)
                else:
                    update = self._on_success(e, cycle_no, reading)
            updates.append(self._notify(update))

        self._cycle += 1
        return updates

    def _skip(self, e: _Entry, cycle_no: int) -> DeviceUpdate | None:
        """Count an offline cycle; return the skip update, or None to poll."""
        if e.device.online:
            return None
        e.offline_cycles += 1
        if e.offline_cycles < e.offline_interval:
            e.reading = None
            e.read_time_ms = 0
            return self._update(e, cycle_no, STATUS_SKIP, False)
        e.offline_cycles = 0
        return None

    def _on_failure(self, e: _Entry, cycle_no: int) -> DeviceUpdate:
        e.consecutive_timeouts += 1
        e.reading = None
        nxt = next_interval(e.offline_interval)
        dev = e.device

        if dev.online and e.consecutive_timeouts >= self._offline_threshold:
            dev._mark_offline()
            e.offline_cycles = 0
            e.offline_interval = nxt
            status = STATUS_SET_OFFLINE
            log.info(
                "%s: device %d offline after %d failed polls, retry every %d cycles",
                self.name, dev.address, e.consecutive_timeouts, nxt,
            )
        elif dev.online:
            status = STATUS_TIMEOUT
        else:
            e.offline_interval = nxt
            status = STATUS_STILL_OFFLINE
            log.debug("%s: device %d still offline, retry every %d cycles",
                      self.name, dev.address, nxt)

        timed_out = dev.last_timed_out
        return self._update(e, cycle_no, status, timed_out,
                            short_read=not timed_out)

    def _on_success(self, e: _Entry, cycle_no: int,
                    reading: Reading) -> DeviceUpdate:
        dev = e.device
        was_online = dev.online
        e.reading = reading
        dev._mark_online()
        e.consecutive_timeouts = 0
        e.offline_cycles = 0
        e.offline_interval = self._offline_interval

        if was_online:
            status = STATUS_OK
        else:
            status = STATUS_BACK_ONLINE
            log.info("%s: device %d back online", self.name, dev.address)
        log.debug("%s: device %d: %s (%d ms)", self.name, dev.address,
                  fmt_reading(reading), e.read_time_ms)
        return self._update(e, cycle_no, status, False)

    def _update(self, e: _Entry, cycle_no: int, status: str, timed_out: bool,
                short_read: bool = False) -> DeviceUpdate:
        return DeviceUpdate(
            bus=self.name,
            address=e.device.address,
            online=e.device.online,
            reading=e.reading,
            status=status,
            read_time_ms=e.read_time_ms,
            cycle=cycle_no,
            timed_out=timed_out,
            short_read=short_read,
        )

    def _notify(self, update: DeviceUpdate) -> DeviceUpdate:
        for callback in self._subscribers:
            try:
                callback(update)
            except Exception:
                log.exception("%s: update observer failed", self.name)
        return update
