#!/usr/bin/env python3
"""Virtual STS devices on a serial port.

Runs a pymodbus RTU server on a serial port (typically a socat PTY)
that serves the STS measurement block 0x0020-0x0038 for each listed
address, as holding and input registers.  Addresses listed with
``--silent`` are left out of the server context and never answer, so
the monitor's offline handling can be exercised.

Usage:
    python simulator.py <port> <addr>[,<addr>...] [--silent <addr>,...]

Example:
    python simulator.py /tmp/stsmon-slave 1,2,3 --silent 3
"""

import argparse
import random

from pymodbus import FramerType
from pymodbus.datastore import (
    ModbusDeviceContext,
    ModbusSequentialDataBlock,
    ModbusServerContext,
)
from pymodbus.server import StartSerialServer

REG_BASE = 0x0020
REG_END = 0x0038
REG_COUNT = REG_END - REG_BASE + 1


def sts_registers(active_source):
    """Build one synthetic 25-register STS measurement block."""
    regs = [0] * REG_COUNT
    src1 = 230 + random.randint(-3, 3)
    src2 = 230 + random.randint(-3, 3)
    regs[0] = src1 if active_source == 1 else src2      # output voltage
    regs[1] = 120 + random.randint(-10, 10)             # output current x10
    regs[2] = src1
    regs[3] = src2
    regs[4] = abs(src1 - src2)
    regs[0x002F - REG_BASE] = 500 + random.randint(-2, 2)  # frequency x10
    regs[REG_END - REG_BASE] = active_source
    return regs


def device_context(active_source):
    """Device context holding the measurement block at REG_BASE.

    Data blocks are 1-based, so the block starts at ``REG_BASE + 1``
    to answer requests for register ``REG_BASE``.
    """
    regs = sts_registers(active_source)
    return ModbusDeviceContext(
        hr=ModbusSequentialDataBlock(REG_BASE + 1, list(regs)),
        ir=ModbusSequentialDataBlock(REG_BASE + 1, list(regs)),
    )


def server_context(addrs, silent):
    """Build the server context for every answering address.

    Odd addresses report source 2 as active, even ones source 1.
    """
    devices = {
        addr: device_context(1 + addr % 2)
        for addr in sorted(addrs - silent)
    }
    if not devices:
        raise ValueError("no answering addresses")
    return ModbusServerContext(devices=devices, single=False)


def run(port, addrs, silent, baudrate=9600):
    """Serve requests on *port* until interrupted."""
    context = server_context(addrs, silent)
    print("simulator: addrs={} silent={} listening on {}".format(
        sorted(addrs), sorted(silent), port), flush=True)
    try:
        StartSerialServer(
            context,
            framer=FramerType.RTU,
            port=port,
            baudrate=baudrate,
            ignore_missing_devices=True,
        )
    except KeyboardInterrupt:
        pass


def _addr_list(text):
    return {int(a) for a in text.split(",") if a}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="virtual STS devices")
    parser.add_argument("port", help="serial port to listen on")
    parser.add_argument("addrs", type=_addr_list, help="comma-separated addresses")
    parser.add_argument("--silent", type=_addr_list, default=set(),
                        help="addresses that never answer")
    parser.add_argument("--baudrate", type=int, default=9600)
    args = parser.parse_args()
    run(args.port, args.addrs, args.silent, args.baudrate)
