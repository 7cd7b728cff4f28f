"""Shared pytest fixtures for stsmon tests."""

from stsmon.reading import REG_COUNT
from stsmon.transport import BlockRead


def make_registers(vout=230, iout=52, src1=230, src2=231, diff=1,
                   freq=500, active=1) -> list[int]:
    """Build a full 25-register STS block for testing."""
    regs = [0] * REG_COUNT
    regs[0] = vout
    regs[1] = iout
    regs[2] = src1
    regs[3] = src2
    regs[4] = diff
    regs[15] = freq
    regs[24] = active
    return regs


OK = BlockRead(make_registers(), False)
TIMEOUT = BlockRead([], True)
SHORT = BlockRead([230, 52, 230], False)


class FakeTransport:
    """Test double for SerialTransport.

    *script* maps a device address to a list of BlockRead results that
    are returned in turn; the last one repeats once the list runs out.
    Unknown addresses time out.  Every call is recorded.
    """

    def __init__(self, script: dict[int, list[BlockRead]] | None = None):
        """Initialize with per-address canned results."""
        self._script = {a: list(r) for a, r in (script or {}).items()}
        self.calls = []
        self.close_count = 0

    def read_block(self, function, address, start, count) -> BlockRead:
        """Record the call and return the next canned result."""
        self.calls.append((function, address, start, count))
        results = self._script.get(address)
        if not results:
            return TIMEOUT
        if len(results) > 1:
            return results.pop(0)
        return results[0]

    def polled(self, address: int) -> int:
        """Number of reads issued to *address*."""
        return sum(1 for c in self.calls if c[1] == address)

    def close(self) -> None:
        """Count close calls."""
        self.close_count += 1
