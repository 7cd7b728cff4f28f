"""Per-bus polling threads.

``BusRunner`` drives one ``Poller`` on its own thread: wait the
inter-cycle delay, run a cycle, repeat until stopped.  ``Monitor``
keeps one runner per serial port so that a stalled or failing bus
never holds up another one.

Example:
    >>> from stsmon.config import BusSettings
    >>> from stsmon.orchestrator import Monitor
    >>> monitor = Monitor(on_fault=lambda bus, exc: print(bus, exc))
    >>> monitor.subscribe(print)
    >>> monitor.add_device(BusSettings("/dev/ttyUSB0", 9600), 3)
    True
    >>> monitor.stop()
"""

import logging
import threading

from stsmon.config import CYCLE_DELAY_MS, OFFLINE_INTERVAL, OFFLINE_THRESHOLD
from stsmon.poller import Poller
from stsmon.transport import SerialTransport

log = logging.getLogger(__name__)

# How long stop() waits for an in-flight cycle before giving up on it.
STOP_GRACE_S = 0.5


class BusConflictError(Exception):
    """Raised when a port is already open with different settings."""


class BusRunner:
    """Runs poll cycles for one bus on a background thread.

    Owns the poller and the transport.  The transport is closed exactly
    once, when the runner is stopped or when its loop dies on a fault.

    Args:
        poller: The bus's Poller.
        transport: The transport the poller reads through (has
            ``close()``).
        cycle_delay_ms: Pause before each cycle, in milliseconds.
        on_fault: Optional ``callback(bus_name, exc)`` invoked if a
            cycle raises.
    """

    def __init__(self, poller: Poller, transport,
                 cycle_delay_ms: int = CYCLE_DELAY_MS, on_fault=None):
        self.poller = poller
        self._transport = transport
        self._delay = cycle_delay_ms / 1000.0
        self._on_fault = on_fault
        self._stop = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False
        self._thread: threading.Thread | None = None
        self.fault: Exception | None = None

    @property
    def name(self) -> str:
        return self.poller.name

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the polling thread."""
        if self._thread is not None:
            raise RuntimeError("bus %s already started" % self.name)
        self._thread = threading.Thread(
            target=self._run, name="bus-%s" % self.name, daemon=True
        )
        self._thread.start()
        log.info("%s: polling started", self.name)

    def _run(self) -> None:
        """Thread body: wait, poll, repeat until stopped or faulted."""
        try:
            while not self._stop.wait(self._delay):
                updates = self.poller.poll_all(cancel=self._stop)
                log.debug(
                    "%s: cycle %d: %d/%d devices ok",
                    self.name, self.poller.cycle,
                    sum(1 for u in updates if u.reading is not None),
                    len(updates),
                )
        except Exception as exc:
            self.fault = exc
            log.exception("%s: polling stopped by error", self.name)
            self._close_transport()
            if self._on_fault is not None:
                try:
                    self._on_fault(self.name, exc)
                except Exception:
                    log.exception("%s: fault observer failed", self.name)

    def stop(self, grace: float = STOP_GRACE_S) -> None:
        """Stop polling and release the transport.

        No new cycle starts once this is called.  A cycle in progress
        gets *grace* seconds to finish; after that it is abandoned and
        visits no further device.  Safe to call more than once.
        """
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(grace)
            if self._thread.is_alive():
                log.warning("%s: cycle still running after %.1fs, abandoning it",
                            self.name, grace)
        self._close_transport()

    def _close_transport(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._transport.close()
        except Exception:
            log.exception("%s: error closing transport", self.name)
        log.info("%s: closed", self.name)


class Monitor:
    """Owns one BusRunner per serial port.

    Args:
        offline_interval: Initial offline poll interval for every bus.
        offline_threshold: Failures before a device goes offline.
        cycle_delay_ms: Pause between cycles on every bus.
        transport_factory: Called as ``factory(port, baudrate, parity,
            bytesize, stopbits, timeout_ms)`` to open a bus.
        on_fault: Optional ``callback(bus_name, exc)`` for buses that
            fail to open or die while polling.
    """

    def __init__(self, offline_interval: int = OFFLINE_INTERVAL,
                 offline_threshold: int = OFFLINE_THRESHOLD,
                 cycle_delay_ms: int = CYCLE_DELAY_MS,
                 transport_factory=SerialTransport, on_fault=None):
        self._offline_interval = offline_interval
        self._offline_threshold = offline_threshold
        self._cycle_delay_ms = cycle_delay_ms
        self._transport_factory = transport_factory
        self._on_fault = on_fault
        self._lock = threading.Lock()
        self._buses: dict[str, BusRunner] = {}
        self._settings = {}
        self._subscribers = []

    @property
    def buses(self) -> list[BusRunner]:
        with self._lock:
            return list(self._buses.values())

    def bus(self, port: str) -> BusRunner | None:
        with self._lock:
            return self._buses.get(port)

    def subscribe(self, callback) -> None:
        """Deliver updates from every bus, current and future, to *callback*."""
        with self._lock:
            self._subscribers.append(callback)
            runners = list(self._buses.values())
        for runner in runners:
            runner.poller.subscribe(callback)

    def open_bus(self, settings, addresses=()) -> BusRunner | None:
        """Open *settings.port* and start polling it.

        Returns the already running bus if the port is open with the
        same settings.  The port is opened without holding the monitor
        lock, so other buses stay usable while a slow port opens.

        Returns:
            BusRunner | None: The bus, or None if the port could not be
                opened (the fault observer is told why).

        Raises:
            BusConflictError: If the port is open with other settings.
        """
        with self._lock:
            existing = self._existing(settings)
            if existing is not None:
                for addr in addresses:
                    existing.poller.add_device(addr)
                return existing

        try:
            transport = self._transport_factory(
                settings.port, settings.baudrate, settings.parity,
                settings.bytesize, settings.stopbits, settings.timeout_ms,
            )
        except Exception as exc:
            log.error("%s: cannot open bus: %s", settings.port, exc)
            self._report_fault(settings.port, exc)
            return None

        try:
            poller = Poller(
                transport, addresses, name=settings.port,
                offline_interval=self._offline_interval,
                offline_threshold=self._offline_threshold,
            )
        except ValueError:
            transport.close()
            raise
        runner = BusRunner(poller, transport, self._cycle_delay_ms,
                           on_fault=self._bus_faulted)

        with self._lock:
            raced = settings.port in self._buses
            if not raced:
                for callback in self._subscribers:
                    poller.subscribe(callback)
                self._buses[settings.port] = runner
                self._settings[settings.port] = settings

        if raced:
            # Another thread opened the port first.
            runner.stop()
            return self.open_bus(settings, addresses)

        runner.start()
        return runner

    def add_device(self, settings, address: int) -> bool:
        """Add *address* to the bus for *settings*, opening it if needed.

        Returns:
            bool: True if the device was added, False if it was already
                there or the bus could not be opened.

        Raises:
            BusConflictError: If the port is open with other settings.
        """
        with self._lock:
            existing = self._existing(settings)
            if existing is not None:
                return existing.poller.add_device(address)
        return self.open_bus(settings, [address]) is not None

    def remove_device(self, port: str, address: int) -> bool:
        """Remove *address* from *port*.  False if either is unknown.

        The bus is stopped and its port released once its last device
        is removed.
        """
        with self._lock:
            runner = self._buses.get(port)
            if runner is None or not runner.poller.remove_device(address):
                return False
            empty = not runner.poller.addresses
            if empty:
                del self._buses[port]
                del self._settings[port]
        if empty:
            log.info("%s: last device removed", port)
            runner.stop()
        return True

    def close_bus(self, port: str) -> bool:
        """Stop and forget the bus on *port*.  False if not open."""
        with self._lock:
            runner = self._buses.pop(port, None)
            self._settings.pop(port, None)
        if runner is None:
            return False
        runner.stop()
        return True

    def stop(self) -> None:
        """Stop every bus."""
        with self._lock:
            runners = list(self._buses.values())
            self._buses.clear()
            self._settings.clear()
        for runner in runners:
            runner.stop()

    def _existing(self, settings) -> BusRunner | None:
        """Return the open bus for *settings.port*; caller holds the lock."""
        existing = self._buses.get(settings.port)
        if existing is not None and self._settings[settings.port] != settings:
            raise BusConflictError(
                "port %s already open with different settings" % settings.port
            )
        return existing

    def _bus_faulted(self, port: str, exc: Exception) -> None:
        """Forget a bus whose loop died, then tell the fault observer."""
        with self._lock:
            runner = self._buses.get(port)
            if runner is not None and runner.fault is not None:
                del self._buses[port]
                del self._settings[port]
        self._report_fault(port, exc)

    def _report_fault(self, port: str, exc: Exception) -> None:
        if self._on_fault is None:
            return
        try:
            self._on_fault(port, exc)
        except Exception:
            log.exception("%s: fault observer failed", port)
