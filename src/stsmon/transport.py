"""Register-read transport for one serial bus.

The polling engine only needs ``read_block()`` and ``close()``; the
Modbus RTU framing and CRC are left to pymodbus.  Anything with the
same two methods can stand in for ``SerialTransport`` -- the tests use
an in-memory fake.

Example:
    >>> from stsmon.transport import SerialTransport, FunctionKind
    >>> bus = SerialTransport("/dev/ttyUSB0", 9600, timeout_ms=200)
    >>> result = bus.read_block(FunctionKind.HOLDING, 3, 0x0020, 25)
    >>> len(result.registers), result.timed_out
    (25, False)
    >>> bus.close()
"""

import enum
import logging
import threading
from typing import NamedTuple

import serial
from pymodbus import FramerType
from pymodbus.client import ModbusSerialClient
from pymodbus.exceptions import ModbusException, ModbusIOException

from stsmon.config import TIMEOUT_MS

log = logging.getLogger(__name__)

# pymodbus logs every failed transaction; the poller reports those itself.
logging.getLogger("pymodbus").setLevel(logging.WARNING)


class FunctionKind(enum.IntEnum):
    """Modbus register read function codes."""

    HOLDING = 0x03
    INPUT = 0x04


class BlockRead(NamedTuple):
    """Outcome of one block read.

    ``registers`` holds what was actually read; fewer than requested
    means the read failed.  ``timed_out`` is set only when the device
    did not answer at all.
    """

    registers: list[int]
    timed_out: bool


class TransportError(Exception):
    """Raised when the serial port cannot be opened."""


class SerialTransport:
    """Modbus RTU master on one serial port.

    Opens the port on construction.  Reads never raise: timeouts,
    exception responses and I/O errors are reported through the
    returned ``BlockRead``.

    Args:
        port: Serial device path (e.g. ``"/dev/ttyUSB0"`` or ``"COM3"``).
        baudrate: Baud rate.
        parity: ``"N"``, ``"E"`` or ``"O"``.
        bytesize: Data bits (7 or 8).
        stopbits: Stop bits (1 or 2).
        timeout_ms: Response timeout per request in milliseconds.

    Raises:
        TransportError: If the port cannot be opened.
    """

    def __init__(self, port: str, baudrate: int, parity: str = "N",
                 bytesize: int = 8, stopbits: int = 1,
                 timeout_ms: int = TIMEOUT_MS):
        self.port = port
        self._lock = threading.Lock()
        self._closed = False
        self._client = ModbusSerialClient(
            port,
            framer=FramerType.RTU,
            baudrate=baudrate,
            parity=parity,
            bytesize=bytesize,
            stopbits=stopbits,
            timeout=timeout_ms / 1000.0,
            retries=0,
        )
        try:
            ok = self._client.connect()
        except (ModbusException, serial.SerialException, OSError) as exc:
            raise TransportError(
                "cannot open %s: %s" % (port, exc)
            ) from exc
        if not ok:
            raise TransportError("cannot open %s" % port)
        log.debug("opened %s at %d baud", port, baudrate)

    def read_block(self, function: FunctionKind, address: int,
                   start: int, count: int) -> BlockRead:
        """Read *count* registers from device *address* at *start*.

        Args:
            function: Which register table to read.
            address: Device address (1-247).
            start: First register address.
            count: Number of registers.

        Returns:
            BlockRead: Registers read (possibly fewer than *count*) and
                whether the request timed out.
        """
        if function == FunctionKind.HOLDING:
            read = self._client.read_holding_registers
        else:
            read = self._client.read_input_registers

        # pymodbus reconnects on every request, so a closed transport
        # must not reach the client.
        with self._lock:
            if self._closed:
                log.debug("read on closed %s/%d ignored", self.port, address)
                return BlockRead([], False)
            try:
                rr = read(start, count=count, device_id=address)
            except ModbusIOException as exc:
                log.debug("no response from %s/%d: %s", self.port, address, exc)
                return BlockRead([], True)
            except (ModbusException, serial.SerialException, OSError) as exc:
                log.debug("read failed on %s/%d: %s", self.port, address, exc)
                return BlockRead([], False)

        # Some pymodbus versions hand back the exception instead of
        # raising it.
        if isinstance(rr, ModbusIOException):
            log.debug("no response from %s/%d", self.port, address)
            return BlockRead([], True)
        if rr.isError():
            log.debug("exception response from %s/%d: %s",
                      self.port, address, rr)
            return BlockRead([], False)

        return BlockRead(list(rr.registers[:count]), False)

    def close(self) -> None:
        """Close the serial port.  Safe to call more than once.

        Waits for a request in flight to finish; reads issued after
        this returns fail without touching the port.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._client.close()
        log.debug("closed %s", self.port)
