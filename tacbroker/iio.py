"""ADC channel access backed by in-memory values, plus calibration data handling."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

DEVICETREE_CHOSEN = Path("/sys/firmware/devicetree/base/chosen")

# (IIO channel name, calibration data location, internal channel name)
CHANNELS_STM32: Tuple[Tuple[str, str, str], ...] = (
    ("voltage13", "baseboard-factory-data/usb-host-curr", "usb-host-curr"),
    ("voltage15", "baseboard-factory-data/usb-host1-curr", "usb-host1-curr"),
    ("voltage0", "baseboard-factory-data/usb-host2-curr", "usb-host2-curr"),
    ("voltage1", "baseboard-factory-data/usb-host3-curr", "usb-host3-curr"),
    ("voltage2", "baseboard-factory-data/out0-volt", "out0-volt"),
    ("voltage10", "baseboard-factory-data/out1-volt", "out1-volt"),
    ("voltage5", "baseboard-factory-data/iobus-curr", "iobus-curr"),
    ("voltage9", "baseboard-factory-data/iobus-volt", "iobus-volt"),
)

CHANNELS_PWR: Tuple[Tuple[str, str, str], ...] = (
    ("voltage", "powerboard-factory-data/pwr-volt", "pwr-volt"),
    ("current", "powerboard-factory-data/pwr-curr", "pwr-curr"),
)

_STALL_AGE = 0.5
_CALIBRATION = struct.Struct(">ff")

Reading = Tuple[float, float]


def _to_f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


@dataclass(frozen=True)
class Calibration:
    """Linear ADC calibration: ``value * scale - offset``."""

    scale: float
    offset: float

    @classmethod
    def from_file(cls, path: Union[str, PathLike]) -> "Calibration":
        """Load two big-endian 32 bit floats (scale, offset) from ``path``."""
        try:
            with open(path, "rb") as fd:
                data = fd.read(_CALIBRATION.size)
        except OSError as exc:
            raise OSError(
                exc.errno, f"Failed to read adc calibration data from {path}"
            ) from exc
        if len(data) < _CALIBRATION.size:
            raise ValueError(f"adc calibration data in {path} is truncated")
        scale, offset = _CALIBRATION.unpack(data)
        return cls(scale, offset)

    @classmethod
    def from_devicetree_chosen(cls, name: str) -> "Calibration":
        """Load calibration data from the devicetree chosen parameters."""
        return cls.from_file(DEVICETREE_CHOSEN / name)

    def apply(self, value: float) -> float:
        return _to_f32(value * self.scale - self.offset)


class CalibratedChannel:
    """An ADC channel holding its most recent value.

    A stalled channel reports readings that are half a second old.
    """

    def __init__(self) -> None:
        self._value = 0.0
        self._stalled = False

    def try_get_multiple(
        self, channels: Iterable["CalibratedChannel"]
    ) -> Optional[Tuple[float, Tuple[float, ...]]]:
        """Read several channels at one monotonic timestamp."""
        values = tuple(channel._value for channel in channels)
        timestamp = time.monotonic()
        if self._stalled:
            timestamp -= _STALL_AGE
        return timestamp, values

    def try_get(self) -> Optional[Reading]:
        reading = self.try_get_multiple([self])
        if reading is None:
            return None
        timestamp, (value,) = reading
        return timestamp, value

    def get(self) -> Reading:
        """Return ``(timestamp, value)``, retrying until a consistent reading succeeds."""
        while True:
            reading = self.try_get()
            if reading is not None:
                return reading

    def set(self, value: float) -> None:
        self._value = _to_f32(value)

    def stall(self, state: bool) -> None:
        self._stalled = bool(state)


class IioThread:
    """The set of ADC channels, looked up by their internal names."""

    def __init__(self) -> None:
        self._channels: Dict[str, CalibratedChannel] = {
            name: CalibratedChannel() for _, _, name in CHANNELS_STM32 + CHANNELS_PWR
        }

    def get_channel(self, name: str) -> CalibratedChannel:
        try:
            return self._channels[name]
        except KeyError:
            raise LookupError(f"Could not get adc channel {name}") from None