"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.
Import individual names where needed.

Example:
    >>> from stsmon.config import load_config, TIMEOUT_MS
    >>> cfg = load_config("stsmon.toml")
    >>> cfg["buses"][0].port
    '/dev/ttyUSB0'
"""

import tomllib
from dataclasses import dataclass

# Response timeout in milliseconds for one register read.
TIMEOUT_MS = 200

# Pause between two polling cycles on the same bus, in milliseconds.
CYCLE_DELAY_MS = 50

# Cycles an offline device is skipped before it is polled again; also
# the value the interval resets to when the device comes back.
OFFLINE_INTERVAL = 5

# Consecutive failed polls before an online device is marked offline.
OFFLINE_THRESHOLD = 3

# Upper bound for the offline poll interval, in cycles.
MAX_OFFLINE_INTERVAL = 60

_PARITIES = ("N", "E", "O")
_BYTESIZES = (7, 8)
_STOPBITS = (1, 2)


@dataclass(frozen=True)
class BusSettings:
    """Serial parameters of one bus.

    Two settings describe the same bus only if every field matches.
    """

    port: str
    baudrate: int = 9600
    parity: str = "N"
    bytesize: int = 8
    stopbits: int = 1
    timeout_ms: int = TIMEOUT_MS


def load_config(path: str) -> dict:
    """Read a TOML config file and validate it.

    Optional ``[polling]`` section: ``offline_interval``,
    ``offline_threshold``, ``cycle_delay_ms`` (ints).

    One or more ``[[bus]]`` tables, each with ``port`` (str) and
    ``devices`` (list[int], 1-247), and optionally ``baudrate``,
    ``parity``, ``bytesize``, ``stopbits``, ``timeout_ms``.

    Returns:
        dict: ``offline_interval``, ``offline_threshold``,
            ``cycle_delay_ms`` (ints), ``buses`` (list[BusSettings]) and
            ``devices`` (dict mapping port to list of addresses).

    Raises:
        ValueError: If any key is missing or has the wrong type/value.

    Example:
        >>> cfg = load_config("stsmon.toml")
        >>> cfg["devices"]["/dev/ttyUSB0"]
        [1, 2, 3]
    """
    with open(path, "rb") as f:
        raw = tomllib.load(f)

    polling = raw.get("polling", {})
    if not isinstance(polling, dict):
        raise ValueError("[polling] must be a table")

    result = {
        "offline_interval": _optional_int(
            polling, "offline_interval", OFFLINE_INTERVAL, minimum=1),
        "offline_threshold": _optional_int(
            polling, "offline_threshold", OFFLINE_THRESHOLD, minimum=1),
        "cycle_delay_ms": _optional_int(
            polling, "cycle_delay_ms", CYCLE_DELAY_MS, minimum=0),
        "buses": [],
        "devices": {},
    }

    if "bus" not in raw:
        raise ValueError("missing required section: [[bus]]")
    if not isinstance(raw["bus"], list) or len(raw["bus"]) == 0:
        raise ValueError("[[bus]] must be a non-empty array of tables")

    for i, section in enumerate(raw["bus"]):
        if not isinstance(section, dict):
            raise ValueError("bus[%d] must be a table" % i)
        settings = _parse_bus(section, i)
        if settings.port in result["devices"]:
            raise ValueError("bus[%d]: port %s listed twice" % (i, settings.port))
        _require_devices(section, i)
        result["buses"].append(settings)
        result["devices"][settings.port] = list(section["devices"])

    return result


def _parse_bus(section: dict[str, object], i: int) -> BusSettings:
    """Build BusSettings from one ``[[bus]]`` table."""
    _require_str(section, "port")
    settings = BusSettings(
        port=section["port"],
        baudrate=_optional_int(section, "baudrate", 9600, minimum=1),
        parity=section.get("parity", "N"),
        bytesize=_optional_int(section, "bytesize", 8),
        stopbits=_optional_int(section, "stopbits", 1),
        timeout_ms=_optional_int(section, "timeout_ms", TIMEOUT_MS, minimum=1),
    )
    if settings.parity not in _PARITIES:
        raise ValueError(
            "bus[%d].parity must be one of N, E, O, got %r" % (i, settings.parity)
        )
    if settings.bytesize not in _BYTESIZES:
        raise ValueError("bus[%d].bytesize must be 7 or 8" % i)
    if settings.stopbits not in _STOPBITS:
        raise ValueError("bus[%d].stopbits must be 1 or 2" % i)
    return settings


def _require_devices(raw: dict[str, object], i: int) -> None:
    """Validate that devices is a non-empty list of unique addresses."""
    if "devices" not in raw:
        raise ValueError("missing required key: bus[%d].devices" % i)
    devices = raw["devices"]
    if not isinstance(devices, list):
        raise ValueError("bus[%d].devices must be a list of ints" % i)
    if len(devices) == 0:
        raise ValueError("bus[%d].devices must not be empty" % i)
    for j, v in enumerate(devices):
        if not isinstance(v, int) or isinstance(v, bool):
            raise ValueError(
                "bus[%d].devices[%d] must be int, got %s" % (i, j, type(v).__name__)
            )
        if not 1 <= v <= 247:
            raise ValueError(
                "bus[%d].devices[%d] must be 1-247, got %d" % (i, j, v)
            )
    if len(set(devices)) != len(devices):
        raise ValueError("bus[%d].devices contains duplicates" % i)


def _optional_int(raw: dict[str, object], key: str, default: int,
                  minimum: int | None = None) -> int:
    """Return ``raw[key]`` validated as int, or *default* if absent."""
    if key not in raw:
        return default
    value = raw[key]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError("%s must be int, got %s" % (key, type(value).__name__))
    if minimum is not None and value < minimum:
        raise ValueError("%s must be >= %d, got %d" % (key, minimum, value))
    return value


def _require_str(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (key, type(raw[key]).__name__))
