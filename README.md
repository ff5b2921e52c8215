# tacbroker

An asyncio topic broker for device daemons. Each topic holds a value, keeps a
short history of retained values, and fans new values out to subscribers. The
same topics can be mounted on an aiohttp application, where they become REST
resources and MQTT topics reachable over a WebSocket.

## Topics

Topics are registered on `tacbroker.broker.BrokerBuilder`. The helpers decide
what is visible from the outside; each keeps one retained value:

- `topic_ro(path, initial=None)` – readable over REST and MQTT
- `topic_rw(path, initial=None)` – readable and writable
- `topic_wo(path, initial=None)` – writable only
- `topic_hidden(initial=None)` – internal use only, mounted at `/hidden`

`topic(path, web_readable, web_writable, initial, retained_length)` takes every
option explicitly, including how many retained values the topic keeps.
`topics()` returns what has been registered so far. Paths must be valid MQTT
topic names: non-empty and without `#` or `+` (`InvalidTopicName` otherwise).

```python
from aiohttp import web

from tacbroker.broker import BrokerBuilder

builder = BrokerBuilder()
uptime = builder.topic_ro("/v1/system/uptime", 0)
led = builder.topic_rw("/v1/led/status", False)

app = web.Application()
builder.build(app)
```

`build` can be called only once; registering topics afterwards raises
`RuntimeError`.

Values are encoded as compact JSON by default (dataclasses become objects).
Pass `encode` and `decode` callables to any of the registration methods to use
a different mapping between values and bytes.

## Web access

Once built, each readable topic answers `GET` at its path with the latest
retained value as `application/json` (404 while it has none). Writable topics
accept `PUT` and `POST` with a JSON body (204 on success, 400 for a malformed
payload). A read-only and a write-only topic may share one path, so that
written values can be checked before they are published.

MQTT 3.1.1 clients connect with a WebSocket upgrade on `/v1/mqtt` (426 without
one); the `mqttv3.1` and `mqtt` subprotocols are offered. The endpoint accepts
connections without user name, password or will, and then handles:

- `SUBSCRIBE`, including `+` and `#` wildcard filters, matched against readable
  topics; all retained values are sent after the `SUBACK`;
- `UNSUBSCRIBE`;
- `PUBLISH` with QoS 0, retain set and dup clear, to writable topics;
- `PINGREQ`.

Anything else, a malformed payload, or a client that cannot keep up with its
queue of 4096 pending messages ends the connection with close code 1011 and
the reason.

The packet codec is available on its own in `tacbroker.mqtt_packets`:
`decode_packet(data)`, an `encode()` method on each packet class, and
`topic_filter_matches(topic_filter, topic_name)`. Malformed packets raise
`PacketError`.

## Working with values

All topic operations are coroutines:

```python
await uptime.set(42)
latest = await uptime.try_get()      # None until a value has been set
value = await led.get()              # waits for a value if there is none

receiver, handle = await led.subscribe_unbounded()
async for state in receiver:
    ...
await handle.unsubscribe()
```

`modify(callback)` performs a read-modify-write: the callback receives the
current value (or `None`) and returns the new value, or `None` to leave the
topic unchanged. `set_from_bytes`, `try_get_as_bytes` and `subscribe_as_bytes`
work with the encoded form.

Subscriber queues are `tacbroker.channel.Channel` objects, created with
`bounded(capacity)` or `unbounded()`. A subscriber whose bounded queue is full
is closed and dropped; one whose queue is closed is dropped.

## ADC channels

`tacbroker.adc.Adc` ties ten ADC channels (USB host currents, output voltages,
IO bus and DUT power) to read-only topics under `/v1/...`, each keeping the
last 200 measurements. `publish_once()` copies the current reading of every
channel into its topic as a `Measurement`; `run()` does so every 100 ms,
forever. Measurements are encoded as `{"ts": ..., "value": ...}` with `ts` in
milliseconds since the Unix epoch.

`IioThread` from `tacbroker.iio` supplies the channels by name. Its
`CalibratedChannel.set` stores a value and `CalibratedChannel.stall` makes
readings appear half a second old. `Calibration.from_file` reads a big-endian
32 bit scale and offset pair; `apply(value)` returns `value * scale - offset`.

```python
from tacbroker.adc import Adc
from tacbroker.iio import IioThread

iio = IioThread()
adc = Adc(builder, iio)
iio.get_channel("pwr-volt").set(12.0)
await adc.publish_once()
```

## What it does not do

- The channels of `IioThread` hold values set in memory; nothing samples real
  ADC hardware, and `Calibration` is not applied to them automatically.
- There is no command and no server process: the broker mounts routes on an
  aiohttp `web.Application` that you create and run yourself.
- The MQTT endpoint does not support QoS 1 or 2, sessions, authentication or
  MQTT over plain TCP.

## Tests

The test suite uses pytest and pytest-asyncio, available through the `test`
extra.