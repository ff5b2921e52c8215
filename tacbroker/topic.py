"""Topics: named values with retained history and subscriber queues."""

from __future__ import annotations

import dataclasses
import json
import weakref
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

from .channel import Channel, ChannelClosed, ChannelFull, unbounded

Encoder = Callable[[Any], bytes]
Decoder = Callable[[bytes], Any]

_MAX_TOPIC_NAME_LENGTH = 65535


class InvalidTopicName(ValueError):
    """Raised for a string that is not a valid MQTT topic name."""


def validate_topic_name(name: str) -> str:
    """Return ``name`` if it is a valid MQTT topic name, else raise."""
    if not name:
        raise InvalidTopicName("topic name must not be empty")
    if len(name.encode("utf-8")) > _MAX_TOPIC_NAME_LENGTH:
        raise InvalidTopicName("topic name is too long")
    if any(ch in "#+" for ch in name):
        raise InvalidTopicName(f"topic name {name!r} contains a wildcard")
    return name


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"cannot serialize {type(value).__name__}")


def _json_encode(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":"), default=_json_default).encode("utf-8")


def _json_decode(payload: bytes) -> Any:
    return json.loads(payload)


class RetainedValue:
    """A topic value together with its lazily cached serialized form."""

    def __init__(self, value: Any, encode: Optional[Encoder] = None) -> None:
        self._native = value
        self._encode = encode or _json_encode
        self._serialized: Optional[bytes] = None

    def native(self) -> Any:
        return self._native

    def serialized(self) -> bytes:
        """Return the serialized value, encoding it on first use."""
        if self._serialized is None:
            self._serialized = self._encode(self._native)
        return self._serialized


class SubscriptionHandle:
    """Removes a native-value subscriber from its topic."""

    def __init__(self, topic: "Topic", token: object) -> None:
        self._topic = weakref.ref(topic)
        self._token = token

    async def unsubscribe(self) -> None:
        """Remove the subscriber; a no-op if it is already gone."""
        topic = self._topic()
        if topic is not None:
            topic._remove_sender(topic._senders, self._token)


class SerializedSubscriptionHandle:
    """Removes a serialized-value subscriber from its topic."""

    def __init__(self, topic: "Topic", token: object) -> None:
        self._topic = weakref.ref(topic)
        self._token = token

    async def unsubscribe(self) -> None:
        """Remove the subscriber; a no-op if it is already gone."""
        topic = self._topic()
        if topic is not None:
            topic._remove_sender(topic._senders_serialized, self._token)


class Topic:
    """A value published under a path, with retained history and subscribers.

    Native subscribers receive the values themselves; serialized subscribers
    receive ``(path, bytes)`` tuples. A subscriber whose queue is full is
    closed and dropped, one whose queue is closed is dropped.
    """

    def __init__(
        self,
        path: str,
        web_readable: bool = False,
        web_writable: bool = False,
        initial: Any = None,
        retained_length: int = 1,
        encode: Optional[Encoder] = None,
        decode: Optional[Decoder] = None,
    ) -> None:
        self._path = validate_topic_name(path)
        self._web_readable = web_readable
        self._web_writable = web_writable
        self._encode = encode or _json_encode
        self._decode = decode or _json_decode
        self._retained_length = retained_length
        self._retained: Deque[RetainedValue] = deque()
        if initial is not None:
            self._retained.append(RetainedValue(initial, self._encode))
        self._senders: List[Tuple[object, Channel]] = []
        self._senders_serialized: List[Tuple[object, Channel]] = []

    def path(self) -> str:
        return self._path

    def web_readable(self) -> bool:
        return self._web_readable

    def web_writable(self) -> bool:
        return self._web_writable

    def subscriber_count(self) -> int:
        return len(self._senders)

    def serialized_subscriber_count(self) -> int:
        return len(self._senders_serialized)

    @staticmethod
    def _remove_sender(senders: List[Tuple[object, Channel]], token: object) -> None:
        for index, (candidate, _) in enumerate(senders):
            if candidate is token:
                del senders[index]
                return

    @staticmethod
    def _deliver(senders: List[Tuple[object, Channel]], make_item: Callable[[], Any]) -> None:
        kept = []
        for token, sender in senders:
            try:
                sender.try_send(make_item())
            except ChannelFull:
                sender.close()
            except ChannelClosed:
                pass
            else:
                kept.append((token, sender))
        senders[:] = kept

    def _set_locked(self, value: Any) -> None:
        retained = RetainedValue(value, self._encode)
        self._deliver(self._senders, retained.native)
        self._deliver(self._senders_serialized, lambda: (self._path, retained.serialized()))
        self._retained.append(retained)
        while len(self._retained) > self._retained_length:
            self._retained.popleft()

    async def set(self, value: Any) -> None:
        """Set a new value and notify subscribers."""
        self._set_locked(value)

    async def try_get(self) -> Any:
        """Return the current value, or None if none is set."""
        return self._retained[-1].native() if self._retained else None

    async def get(self) -> Any:
        """Return the current value, waiting for one if none is set yet."""
        receiver, handle = await self.subscribe_unbounded()
        try:
            return await receiver.recv()
        finally:
            await handle.unsubscribe()

    async def modify(self, callback: Callable[[Any], Any]) -> None:
        """Read-modify-write: set the value to ``callback(current)`` unless it returns None."""
        current = self._retained[-1].native() if self._retained else None
        new = callback(current)
        if new is not None:
            self._set_locked(new)

    async def subscribe(self, sender: Channel) -> SubscriptionHandle:
        """Add ``sender`` as a native subscriber, enqueueing the current value first."""
        token = object()
        try:
            if self._retained:
                sender.try_send(self._retained[-1].native())
        except ChannelFull:
            sender.close()
        except ChannelClosed:
            pass
        else:
            self._senders.append((token, sender))
        return SubscriptionHandle(self, token)

    async def subscribe_unbounded(self) -> Tuple[Channel, SubscriptionHandle]:
        """Create an unbounded channel, subscribe it and return it with its handle."""
        channel = unbounded()
        handle = await self.subscribe(channel)
        return channel, handle

    async def set_from_bytes(self, payload: bytes) -> None:
        """Decode ``payload`` and set it as the new value.

        Raises ValueError if the payload cannot be decoded.
        """
        try:
            value = self._decode(payload)
        except (ValueError, TypeError, KeyError) as exc:
            raise ValueError(f"malformed payload for {self._path}: {exc}") from exc
        self._set_locked(value)

    async def subscribe_as_bytes(self, sender: Channel) -> SerializedSubscriptionHandle:
        """Add ``sender`` as a serialized subscriber, enqueueing all retained values first."""
        token = object()
        should_add = True
        for retained in self._retained:
            try:
                sender.try_send((self._path, retained.serialized()))
            except ChannelFull:
                sender.close()
                should_add = False
                break
            except ChannelClosed:
                should_add = False
                break
        if should_add:
            self._senders_serialized.append((token, sender))
        return SerializedSubscriptionHandle(self, token)

    async def try_get_as_bytes(self) -> Optional[bytes]:
        """Return the current value serialized, or None if none is set."""
        return self._retained[-1].serialized() if self._retained else None