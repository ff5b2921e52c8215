import asyncio
import json
import time

import pytest

from tacbroker.adc import (
    HISTORY_LENGTH,
    Adc,
    AdcChannel,
    Measurement,
    encode_measurement,
    instant_to_js_timestamp,
)
from tacbroker.broker import BrokerBuilder
from tacbroker.channel import unbounded
from tacbroker.iio import IioThread


def make_adc():
    builder = BrokerBuilder()
    iio = IioThread()
    return builder, iio, Adc(builder, iio)


def test_js_timestamp_of_now_is_wall_clock():
    before = time.time() * 1000.0
    ts = instant_to_js_timestamp(time.monotonic())
    after = time.time() * 1000.0
    assert before - 50 <= ts <= after + 50


def test_js_timestamp_reflects_age():
    now = time.monotonic()
    diff = instant_to_js_timestamp(now) - instant_to_js_timestamp(now - 2.0)
    assert abs(diff - 2000.0) < 50


def test_measurement_from_reading():
    m = Measurement.from_reading((12.5, 3.25))
    assert m.ts == 12.5
    assert m.value == 3.25


def test_measurement_to_json():
    m = Measurement(time.monotonic(), 1.5)
    data = m.to_json()
    assert data["value"] == 1.5
    assert abs(data["ts"] - time.time() * 1000.0) < 100


def test_encode_measurement_is_compact_json():
    payload = encode_measurement(Measurement(time.monotonic(), 1.5))
    assert payload.startswith(b'{"ts":')
    assert payload.endswith(b',"value":1.5}')
    assert json.loads(payload)["value"] == 1.5


def test_encode_measurement_uses_short_float_form():
    payload = encode_measurement(Measurement(time.monotonic(), 0.1))
    assert payload.endswith(b',"value":0.1}')


def test_encode_measurement_whole_number():
    payload = encode_measurement(Measurement(time.monotonic(), 2.0))
    assert json.loads(payload)["value"] == 2.0
    assert b'"value":2.0}' in payload


def test_adc_registers_topics():
    builder, _, adc = make_adc()
    paths = [t.path() for t in builder.topics()]
    assert "/v1/usb/host/total/feedback/current" in paths
    assert "/v1/dut/feedback/voltage" in paths
    assert "/v1/dut/feedback/current" in paths
    assert len(paths) == len(adc.channels())
    for topic in builder.topics():
        assert topic.web_readable()
        assert not topic.web_writable()


def test_adc_attributes_match_channels():
    _, iio, adc = make_adc()
    channels = adc.channels()
    assert channels["pwr_volt"] is adc.pwr_volt
    assert isinstance(adc.iobus_curr, AdcChannel)
    assert adc.pwr_curr.fast is iio.get_channel("pwr-curr")


@pytest.mark.asyncio
async def test_topics_empty_before_publish():
    _, _, adc = make_adc()
    assert await adc.pwr_volt.topic.try_get() is None


@pytest.mark.asyncio
async def test_publish_once_copies_values():
    _, iio, adc = make_adc()
    iio.get_channel("pwr-volt").set(12.0)
    iio.get_channel("iobus-curr").set(0.25)
    await adc.publish_once()
    volt = await adc.pwr_volt.topic.try_get()
    curr = await adc.iobus_curr.topic.try_get()
    assert volt.value == 12.0
    assert curr.value == 0.25
    payload = await adc.pwr_volt.topic.try_get_as_bytes()
    assert json.loads(payload)["value"] == 12.0


@pytest.mark.asyncio
async def test_stalled_channel_publishes_old_timestamp():
    _, iio, adc = make_adc()
    iio.get_channel("out0-volt").stall(True)
    await adc.publish_once()
    stalled = await adc.out0_volt.topic.try_get()
    fresh = await adc.out1_volt.topic.try_get()
    assert fresh.ts - stalled.ts > 0.4


@pytest.mark.asyncio
async def test_history_is_limited():
    _, iio, adc = make_adc()
    for i in range(HISTORY_LENGTH + 5):
        iio.get_channel("pwr-curr").set(float(i))
        await adc.publish_once()
    queue = unbounded()
    await adc.pwr_curr.topic.subscribe_as_bytes(queue)
    assert len(queue) == HISTORY_LENGTH
    first = json.loads(queue.try_recv()[1])
    assert first["value"] == 5.0


@pytest.mark.asyncio
async def test_run_publishes_periodically():
    _, iio, adc = make_adc()
    iio.get_channel("usb-host1-curr").set(0.5)
    task = asyncio.ensure_future(adc.run())
    try:
        value = await asyncio.wait_for(adc.usb_host1_curr.topic.get(), 2.0)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    assert value.value == 0.5