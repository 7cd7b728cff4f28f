"""STS register decoding and the reading dataclass.

A static transfer switch exposes its measurements in the holding
register block 0x0020-0x0038 (25 registers).  ``decode_registers``
turns that window -- or any sub-window of it -- into a ``Reading``.

Example:
    >>> from stsmon.reading import decode_registers
    >>> regs = [0] * 25
    >>> regs[0], regs[1], regs[24] = 230, 52, 1
    >>> r = decode_registers(regs)
    >>> r.output_current_a
    5.2
    >>> r.active_source.label
    'SRC1'
"""

import enum
from dataclasses import dataclass

# First and last register of the STS measurement block.
REG_BASE = 0x0020
REG_END = 0x0038
REG_COUNT = REG_END - REG_BASE + 1

_REG_OUTPUT_VOLTAGE = 0x0020
_REG_OUTPUT_CURRENT = 0x0021
_REG_SOURCE1_VOLTAGE = 0x0022
_REG_SOURCE2_VOLTAGE = 0x0023
_REG_DIFF_VOLTAGE = 0x0024
_REG_FREQUENCY = 0x002F
_REG_ACTIVE_SOURCE = 0x0038


class ActiveSource(enum.IntEnum):
    """Source currently feeding the STS output."""

    NONE = 0
    SRC1 = 1
    SRC2 = 2

    @classmethod
    def from_register(cls, value: int) -> "ActiveSource":
        """Map a raw selector register; unknown codes read as NONE."""
        try:
            return cls(value)
        except ValueError:
            return cls.NONE

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class Reading:
    """One decoded set of STS measurements.

    Voltages are in volts, current in amps, frequency in hertz.
    """

    output_voltage_v: float
    output_current_a: float
    source1_voltage_v: float
    source2_voltage_v: float
    diff_voltage_v: float
    frequency_hz: float
    active_source: ActiveSource


# "No data" placeholder for observers that expect a value in every
# column.  Inside the engine a missing reading is None.
NO_DATA = Reading(-1, -1, -1, -1, -1, -1, ActiveSource.NONE)


def decode_registers(regs, start: int = REG_BASE) -> Reading:
    """Decode a register window into a Reading.

    *regs* holds consecutive register values beginning at address
    *start*.  Registers of the full block that the window does not
    cover are treated as zero, so a partial window still decodes
    (best effort -- zeros are not measurements).

    Args:
        regs: Sequence of unsigned 16-bit register values.
        start: Address of ``regs[0]`` (default ``REG_BASE``).

    Returns:
        Reading: The decoded measurements.

    Example:
        >>> decode_registers([231], start=0x0023).source2_voltage_v
        231.0
    """
    if start == REG_BASE and len(regs) == REG_COUNT:
        full = list(regs)
    else:
        full = [0] * REG_COUNT
        for i, value in enumerate(regs):
            offset = start - REG_BASE + i
            if 0 <= offset < REG_COUNT:
                full[offset] = value

    def reg(addr):
        return full[addr - REG_BASE]

    return Reading(
        output_voltage_v=float(reg(_REG_OUTPUT_VOLTAGE)),
        output_current_a=reg(_REG_OUTPUT_CURRENT) / 10,
        source1_voltage_v=float(reg(_REG_SOURCE1_VOLTAGE)),
        source2_voltage_v=float(reg(_REG_SOURCE2_VOLTAGE)),
        diff_voltage_v=float(reg(_REG_DIFF_VOLTAGE)),
        frequency_hz=reg(_REG_FREQUENCY) / 10,
        active_source=ActiveSource.from_register(reg(_REG_ACTIVE_SOURCE)),
    )


def fmt_reading(reading: Reading | None) -> str:
    """Format a reading for a log line.

    Example:
        >>> fmt_reading(None)
        'no data'
    """
    if reading is None:
        return "no data"
    return (
        f"vout={reading.output_voltage_v:.0f}V "
        f"iout={reading.output_current_a:.1f}A "
        f"src1={reading.source1_voltage_v:.0f}V "
        f"src2={reading.source2_voltage_v:.0f}V "
        f"diff={reading.diff_voltage_v:.0f}V "
        f"freq={reading.frequency_hz:.1f}Hz "
        f"active={reading.active_source.label}"
    )
