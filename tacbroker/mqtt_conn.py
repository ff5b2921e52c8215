"""MQTT over websocket endpoint exposing topics to web clients."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from aiohttp import WSMsgType, web

from .channel import Channel, bounded
from .mqtt_packets import (
    ConnackPacket,
    ConnectPacket,
    Packet,
    PacketError,
    PingreqPacket,
    PingrespPacket,
    PublishPacket,
    QoS,
    SubackPacket,
    SubscribePacket,
    UnsubackPacket,
    UnsubscribePacket,
    decode_packet,
    topic_filter_matches,
)
from .topic import SerializedSubscriptionHandle, Topic

# Limit of the queue leading to the websocket. A topic that finds it full
# closes it, which tears the connection down so the user notices the web
# interface is no longer up to date.
MAX_QUEUE_LENGTH = 4096

MQTT_PATH = "/v1/mqtt"

_PROTOCOLS = ("mqttv3.1", "mqtt")
_CLOSE_NORMAL = 1000
_CLOSE_ERROR = 1011
_MAX_CLOSE_REASON = 123
_SEND_ERRORS = (ConnectionError, RuntimeError)

Sender = Callable[[Packet], Awaitable[None]]


class _ConnectionFailure(Exception):
    """Ends an MQTT connection with the given reason."""


def header_contains_ignore_case(headers: Mapping[str, str], name: str, value: str) -> bool:
    """Whether a comma separated header ``name`` lists ``value``, ignoring case."""
    wanted_name = name.lower()
    wanted_value = value.strip().lower()
    return any(
        part.strip().lower() == wanted_value
        for header_name, header_value in headers.items()
        if header_name.lower() == wanted_name
        for part in header_value.split(",")
    )


def _connect_acceptable(packet: ConnectPacket) -> bool:
    return (
        packet.user_name is None
        and packet.password is None
        and packet.will is None
        and not packet.will_retain
        and packet.protocol_level == 4
    )


async def _next_packet(ws: web.WebSocketResponse) -> Optional[Packet]:
    """Receive and decode one packet; None once the websocket is closed."""
    msg = await ws.receive()
    if msg.type == WSMsgType.BINARY:
        return decode_packet(msg.data)
    if msg.type == WSMsgType.TEXT:
        return decode_packet(msg.data.encode("utf-8"))
    if msg.type == WSMsgType.ERROR:
        raise _ConnectionFailure(str(ws.exception() or "websocket error"))
    return None


async def _forward_publishes(queue: Channel, send: Sender) -> None:
    async for topic_name, payload in queue:
        await send(PublishPacket(topic_name, payload))
    raise _ConnectionFailure("subscription channel closed")


async def _unsubscribe_all(handles: Iterable[SerializedSubscriptionHandle]) -> None:
    for handle in handles:
        await handle.unsubscribe()


async def _dispatch(
    packet: Packet,
    topics: Sequence[Topic],
    subscriptions: Dict[str, List[SerializedSubscriptionHandle]],
    queue: Channel,
    send: Sender,
) -> None:
    if isinstance(packet, SubscribePacket):
        # The suback has to go out before any retained values.
        await send(
            SubackPacket(
                packet.packet_identifier,
                tuple(QoS.AT_MOST_ONCE for _ in packet.subscribes),
            )
        )
        for topic_filter, _qos in packet.subscribes:
            handles = [
                await topic.subscribe_as_bytes(queue)
                for topic in topics
                if topic.web_readable() and topic_filter_matches(topic_filter, topic.path())
            ]
            previous = subscriptions.get(topic_filter)
            subscriptions[topic_filter] = handles
            if previous is not None:
                await _unsubscribe_all(previous)
    elif isinstance(packet, UnsubscribePacket):
        for topic_filter in packet.topic_filters:
            previous = subscriptions.pop(topic_filter, None)
            if previous is not None:
                await _unsubscribe_all(previous)
        await send(UnsubackPacket(packet.packet_identifier))
    elif isinstance(packet, PublishPacket):
        if packet.qos != QoS.AT_MOST_ONCE or packet.dup or not packet.retain:
            raise _ConnectionFailure("QoS, DUP or Retain has non-allowed value")
        target = next(
            (t for t in topics if t.web_writable() and t.path() == packet.topic_name),
            None,
        )
        if target is not None:
            try:
                await target.set_from_bytes(packet.payload)
            except ValueError as exc:
                raise _ConnectionFailure(str(exc)) from exc
    elif isinstance(packet, PingreqPacket):
        await send(PingrespPacket())
    else:
        raise _ConnectionFailure("Unknown packet type")


def _task_failure(task: "asyncio.Future[None]") -> Optional[str]:
    if task.cancelled():
        return None
    exc = task.exception()
    return str(exc) if exc is not None else None


async def handle_connection(topics: Sequence[Topic], ws: web.WebSocketResponse) -> None:
    """Serve one MQTT session over a prepared websocket until it ends."""
    try:
        first = await _next_packet(ws)
    except (PacketError, _ConnectionFailure):
        first = None
    if not isinstance(first, ConnectPacket) or not _connect_acceptable(first):
        await ws.close()
        return

    send_lock = asyncio.Lock()

    async def send(packet: Packet) -> None:
        async with send_lock:
            await ws.send_bytes(packet.encode())

    try:
        await send(ConnackPacket(False, 0))
    except _SEND_ERRORS:
        return

    queue = bounded(MAX_QUEUE_LENGTH)
    tx_task = asyncio.ensure_future(_forward_publishes(queue, send))
    recv_task: Optional[asyncio.Future] = None
    subscriptions: Dict[str, List[SerializedSubscriptionHandle]] = {}
    error: Optional[str] = None

    try:
        while True:
            recv_task = asyncio.ensure_future(_next_packet(ws))
            done, _ = await asyncio.wait(
                {recv_task, tx_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if tx_task in done:
                error = _task_failure(tx_task)
                break
            try:
                packet = recv_task.result()
            except (PacketError, _ConnectionFailure) as exc:
                error = str(exc)
                break
            if packet is None:
                break
            try:
                await _dispatch(packet, topics, subscriptions, queue, send)
            except _ConnectionFailure as exc:
                error = str(exc)
                break
            except _SEND_ERRORS as exc:
                error = str(exc) or type(exc).__name__
                break
    finally:
        pending = [task for task in (recv_task, tx_task) if task is not None]
        for task in pending:
            if not task.done():
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for handles in subscriptions.values():
            await _unsubscribe_all(handles)
        queue.close()

    code = _CLOSE_ERROR if error is not None else _CLOSE_NORMAL
    reason = (error or "").encode("utf-8")[:_MAX_CLOSE_REASON]
    try:
        await ws.close(code=code, message=reason)
    except _SEND_ERRORS:
        pass


def register(app: web.Application, topics: Iterable[Topic]) -> None:
    """Mount the MQTT websocket endpoint on ``app``."""
    topic_list = list(topics)

    async def mqtt_handler(request: web.Request) -> web.StreamResponse:
        headers = request.headers
        upgrade_requested = header_contains_ignore_case(
            headers, "Connection", "upgrade"
        ) and header_contains_ignore_case(headers, "Upgrade", "websocket")
        if not upgrade_requested:
            return web.Response(status=426)
        if "Sec-WebSocket-Key" not in headers:
            return web.Response(status=500, text="expected sec-websocket-key")

        ws = web.WebSocketResponse(protocols=_PROTOCOLS)
        await ws.prepare(request)
        await handle_connection(topic_list, ws)
        return ws

    app.router.add_get(MQTT_PATH, mqtt_handler)