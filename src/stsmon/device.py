"""A single STS device on a bus.

Holds the device address and its online flag, and knows how to read
and decode its measurement block over a transport.  Whether the device
is online is decided by the poller, not here.

Example:
    >>> from stsmon.device import Device
    >>> dev = Device(3)
    >>> reading = dev.poll(transport)
    >>> dev.online
    True
"""

import logging

from stsmon.reading import REG_BASE, REG_COUNT, Reading, decode_registers
from stsmon.transport import FunctionKind

log = logging.getLogger(__name__)


class Device:
    """One addressable STS unit.

    Args:
        address: Modbus device address (int, 1-247).

    Raises:
        ValueError: If *address* is outside 1-247.
    """

    def __init__(self, address: int):
        if not 1 <= address <= 247:
            raise ValueError("address must be 1-247, got %d" % address)
        self.address = address
        self.last_timed_out = False
        self._online = True

    def __repr__(self):
        state = "online" if self._online else "offline"
        return "Device(%d, %s)" % (self.address, state)

    @property
    def online(self) -> bool:
        return self._online

    # Only the owning Poller changes liveness.
    def _mark_online(self) -> None:
        self._online = True

    def _mark_offline(self) -> None:
        self._online = False

    def poll(self, transport, function: FunctionKind = FunctionKind.HOLDING,
             start: int = REG_BASE, count: int = REG_COUNT) -> Reading | None:
        """Read and decode this device's registers.

        Reads *count* registers from *start*.  A window smaller than the
        full measurement block is decoded with the missing registers set
        to zero.

        Args:
            transport: Object with ``read_block(function, address,
                start, count)``.
            function: Register table to read.
            start: First register address.
            count: Number of registers.

        Returns:
            Reading | None: The decoded reading, or None if fewer than
                *count* registers came back.
        """
        regs = [0] * count
        result = transport.read_block(function, self.address, start, count)
        self.last_timed_out = result.timed_out

        if len(result.registers) != count:
            log.debug(
                "device %d: read %d/%d registers%s",
                self.address, len(result.registers), count,
                " (timeout)" if result.timed_out else "",
            )
            return None

        regs[:] = result.registers
        return decode_registers(regs, start)
