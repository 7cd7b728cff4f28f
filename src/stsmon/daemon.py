"""Monitor daemon -- polls every configured STS bus until stopped.

Foreground loop driven by a TOML config file.  Each bus polls on its
own thread; updates are handed to the main thread through an
``UpdateChannel`` and logged via a ``StatusBoard``.  Shuts down cleanly
on SIGINT or SIGTERM.

Example:
    Run from the command line::

        stsmon stsmon.toml -v
"""

import argparse
import logging
import signal
import threading
import time

from stsmon.config import load_config
from stsmon.events import UpdateChannel
from stsmon.orchestrator import Monitor
from stsmon.status import StatusBoard

# Seconds between two status summary lines.
_SUMMARY_INTERVAL_S = 60

log = logging.getLogger(__name__)

_shutdown = threading.Event()


def _on_signal(signum: int, frame) -> None:
    """Set the module-level shutdown event on SIGINT/SIGTERM."""
    _shutdown.set()


def _on_fault(bus: str, exc: Exception) -> None:
    """Log a bus that failed to open or stopped polling."""
    log.error("%s: bus stopped: %s", bus, exc)


def run(channel: UpdateChannel, board: StatusBoard,
        shutdown: threading.Event,
        summary_interval: float = _SUMMARY_INTERVAL_S) -> int:
    """Consume updates until *shutdown* is set.

    Feeds every update from *channel* into *board* and logs a summary
    every *summary_interval* seconds.  Returns the number of updates
    consumed.

    Example:
        >>> run(channel, board, ev)
        120
    """
    count = 0
    next_summary = time.monotonic() + summary_interval

    while not shutdown.is_set():
        # Use timeout so we check shutdown flag periodically
        update = channel.get(0.5)
        if update is not None:
            board.apply(update)
            count += 1
        if time.monotonic() >= next_summary:
            log.info(board.summary())
            next_summary = time.monotonic() + summary_interval

    return count


def start_buses(cfg: dict, monitor: Monitor) -> int:
    """Open every configured bus.  Returns how many are polling."""
    started = 0
    for settings in cfg["buses"]:
        devices = cfg["devices"][settings.port]
        log.info(
            "starting: port=%s baudrate=%d parity=%s bytesize=%d stopbits=%d "
            "timeout=%dms devices=%s",
            settings.port, settings.baudrate, settings.parity,
            settings.bytesize, settings.stopbits, settings.timeout_ms, devices,
        )
        if monitor.open_bus(settings, devices) is not None:
            started += 1
    return started


def main() -> int:
    """CLI entry point -- parse args, load config, run the daemon.

    Example:
        From the shell::

            stsmon stsmon.toml
            stsmon stsmon.toml -v
    """
    _shutdown.clear()

    parser = argparse.ArgumentParser(description="STS device monitor")
    parser.add_argument("config", help="path to TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=level,
    )

    cfg = load_config(args.config)
    log.info(
        "offline_interval=%d offline_threshold=%d cycle_delay=%dms",
        cfg["offline_interval"], cfg["offline_threshold"],
        cfg["cycle_delay_ms"],
    )

    channel = UpdateChannel()
    board = StatusBoard()
    monitor = Monitor(
        offline_interval=cfg["offline_interval"],
        offline_threshold=cfg["offline_threshold"],
        cycle_delay_ms=cfg["cycle_delay_ms"],
        on_fault=_on_fault,
    )
    monitor.subscribe(channel.publish)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        if start_buses(cfg, monitor) == 0:
            log.error("no bus could be opened")
            return 1
        run(channel, board, _shutdown)
    finally:
        monitor.stop()
        log.info("shutting down: %s", board.summary())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
