"""ADC channels mirrored into broker topics as timestamped measurements."""

from __future__ import annotations

import asyncio
import json
import math
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .broker import BrokerBuilder
from .iio import CalibratedChannel, IioThread
from .topic import Topic

HISTORY_LENGTH = 200
PUBLISH_INTERVAL = 0.1

# (attribute name, ADC channel name, topic path)
CHANNELS: Tuple[Tuple[str, str, str], ...] = (
    ("usb_host_curr", "usb-host-curr", "/v1/usb/host/total/feedback/current"),
    ("usb_host1_curr", "usb-host1-curr", "/v1/usb/host/port1/feedback/current"),
    ("usb_host2_curr", "usb-host2-curr", "/v1/usb/host/port2/feedback/current"),
    ("usb_host3_curr", "usb-host3-curr", "/v1/usb/host/port3/feedback/current"),
    ("out0_volt", "out0-volt", "/v1/output/out_0/feedback/voltage"),
    ("out1_volt", "out1-volt", "/v1/output/out_1/feedback/voltage"),
    ("iobus_curr", "iobus-curr", "/v1/iobus/feedback/current"),
    ("iobus_volt", "iobus-volt", "/v1/iobus/feedback/voltage"),
    ("pwr_volt", "pwr-volt", "/v1/dut/feedback/voltage"),
    ("pwr_curr", "pwr-curr", "/v1/dut/feedback/current"),
)


def _to_f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _f32_json(value: float) -> str:
    """Shortest decimal text that reads back as the same 32 bit float."""
    if not math.isfinite(value):
        return "null"
    value = _to_f32(value)
    for precision in range(1, 18):
        text = f"{value:.{precision}g}"
        if _to_f32(float(text)) == value:
            break
    if not any(ch in text for ch in ".e"):
        text += ".0"
    return text


def instant_to_js_timestamp(instant: float) -> float:
    """Convert a ``time.monotonic()`` instant to milliseconds since the Unix epoch.

    The monotonic clock is unrelated to calendar time, so this is computed as
    ``now_system - (now_monotonic - instant)``.
    """
    age = time.monotonic() - instant
    return 1000.0 * (time.time() - age)


@dataclass(frozen=True)
class Measurement:
    """A value sampled at a monotonic instant."""

    ts: float
    value: float

    @classmethod
    def from_reading(cls, reading: Tuple[float, float]) -> "Measurement":
        ts, value = reading
        return cls(ts, value)

    def to_json(self) -> Dict[str, Any]:
        """The JSON form: a JavaScript timestamp and the value."""
        return {"ts": instant_to_js_timestamp(self.ts), "value": self.value}


def encode_measurement(measurement: Measurement) -> bytes:
    """Serialize a measurement as compact JSON, the value as a 32 bit float."""
    ts = json.dumps(instant_to_js_timestamp(measurement.ts))
    return f'{{"ts":{ts},"value":{_f32_json(measurement.value)}}}'.encode("utf-8")


@dataclass(frozen=True)
class AdcChannel:
    """An ADC channel: direct access through ``fast``, a value stream through ``topic``."""

    fast: CalibratedChannel
    topic: Topic


class Adc:
    """All ADC channels, each with a read-only topic holding its recent history."""

    def __init__(self, builder: BrokerBuilder, iio_thread: Optional[IioThread] = None) -> None:
        iio = iio_thread if iio_thread is not None else IioThread()
        self._channels: Dict[str, AdcChannel] = {}
        for attribute, channel_name, path in CHANNELS:
            channel = AdcChannel(
                fast=iio.get_channel(channel_name),
                topic=builder.topic(
                    path, True, False, None, HISTORY_LENGTH, encode_measurement
                ),
            )
            self._channels[attribute] = channel
            setattr(self, attribute, channel)

    def channels(self) -> Dict[str, AdcChannel]:
        """The channels by attribute name, in a fixed order."""
        return dict(self._channels)

    async def publish_once(self) -> None:
        """Copy the current value of every channel into its topic."""
        for channel in self._channels.values():
            await channel.topic.set(Measurement.from_reading(channel.fast.get()))

    async def run(self) -> None:
        """Publish all channels every 100 ms, forever."""
        while True:
            await asyncio.sleep(PUBLISH_INTERVAL)
            await self.publish_once()