"""Encoding and decoding of the MQTT 3.1.1 control packets spoken over websockets."""

from __future__ import annotations

import enum
import itertools
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from .topic import InvalidTopicName, validate_topic_name

_MAX_REMAINING_LENGTH = 268_435_455
_MAX_FIELD_LENGTH = 65535
_SUBACK_FAILURE = 0x80


class PacketError(ValueError):
    """Raised for malformed or unsupported MQTT packets."""


class QoS(enum.IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


def _qos(value: int) -> QoS:
    try:
        return QoS(value)
    except ValueError:
        raise PacketError(f"invalid QoS level {value}") from None


def _check_identifier(value: int) -> int:
    if not 0 <= value <= 0xFFFF:
        raise PacketError(f"packet identifier {value} out of range")
    return value


def _validate_filter(topic_filter: str) -> str:
    if not topic_filter:
        raise PacketError("topic filter must not be empty")
    if len(topic_filter.encode("utf-8")) > _MAX_FIELD_LENGTH:
        raise PacketError("topic filter is too long")
    levels = topic_filter.split("/")
    for position, level in enumerate(levels, start=1):
        if "#" in level and (level != "#" or position != len(levels)):
            raise PacketError(f"invalid multi-level wildcard in {topic_filter!r}")
        if "+" in level and level != "+":
            raise PacketError(f"invalid single-level wildcard in {topic_filter!r}")
    return topic_filter


def topic_filter_matches(topic_filter: str, topic_name: str) -> bool:
    """Whether ``topic_name`` is matched by the (possibly wildcarded) ``topic_filter``."""
    _validate_filter(topic_filter)
    filter_levels = topic_filter.split("/")
    name_levels = topic_name.split("/")
    if topic_name.startswith("$") and filter_levels[0] in ("#", "+"):
        return False
    for filter_level, name_level in itertools.zip_longest(filter_levels, name_levels):
        if filter_level == "#":
            return True
        if filter_level is None or name_level is None:
            return False
        if filter_level != "+" and filter_level != name_level:
            return False
    return True


def _encode_length(length: int) -> bytes:
    if length > _MAX_REMAINING_LENGTH:
        raise PacketError("packet is too large")
    out = bytearray()
    while True:
        byte = length % 128
        length //= 128
        if length:
            byte |= 0x80
        out.append(byte)
        if not length:
            return bytes(out)


def _decode_length(data: bytes) -> Tuple[int, int]:
    value = 0
    for shift, byte in enumerate(data[1:5]):
        value |= (byte & 0x7F) << (7 * shift)
        if not byte & 0x80:
            return value, shift + 2
    raise PacketError("malformed remaining length")


def _u16(value: int) -> bytes:
    return struct.pack("!H", value)


def _binary(data: bytes) -> bytes:
    if len(data) > _MAX_FIELD_LENGTH:
        raise PacketError("field is too long")
    return _u16(len(data)) + bytes(data)


def _string(text: str) -> bytes:
    return _binary(text.encode("utf-8"))


def _frame(first_byte: int, body: bytes) -> bytes:
    return bytes([first_byte]) + _encode_length(len(body)) + body


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise PacketError("truncated packet")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("!H", self.take(2))[0]

    def binary(self) -> bytes:
        return bytes(self.take(self.u16()))

    def string(self) -> str:
        try:
            return self.binary().decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PacketError("invalid UTF-8 string") from exc

    def rest(self) -> bytes:
        chunk = self._data[self._pos:]
        self._pos = len(self._data)
        return bytes(chunk)

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def finish(self) -> None:
        if not self.at_end():
            raise PacketError("unexpected trailing bytes in packet")


@dataclass
class ConnectPacket:
    client_id: str = ""
    keep_alive: int = 0
    clean_session: bool = True
    will: Optional[Tuple[str, bytes]] = None
    will_qos: QoS = QoS.AT_MOST_ONCE
    will_retain: bool = False
    user_name: Optional[str] = None
    password: Optional[bytes] = None
    protocol_name: str = "MQTT"
    protocol_level: int = 4

    def __post_init__(self) -> None:
        self.will_qos = _qos(self.will_qos)
        if self.will is None:
            if self.will_qos != QoS.AT_MOST_ONCE or self.will_retain:
                raise PacketError("will QoS or retain set without a will")
        else:
            will_topic, will_message = self.will
            self.will = (will_topic, bytes(will_message))
        if self.password is not None:
            self.password = bytes(self.password)
        if not 0 <= self.keep_alive <= 0xFFFF:
            raise PacketError("keep alive out of range")

    def encode(self) -> bytes:
        flags = 0
        if self.clean_session:
            flags |= 0x02
        if self.will is not None:
            flags |= 0x04 | (int(self.will_qos) << 3)
            if self.will_retain:
                flags |= 0x20
        if self.password is not None:
            flags |= 0x40
        if self.user_name is not None:
            flags |= 0x80
        body = (
            _string(self.protocol_name)
            + bytes([self.protocol_level, flags])
            + _u16(self.keep_alive)
            + _string(self.client_id)
        )
        if self.will is not None:
            body += _string(self.will[0]) + _binary(self.will[1])
        if self.user_name is not None:
            body += _string(self.user_name)
        if self.password is not None:
            body += _binary(self.password)
        return _frame(0x10, body)

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "ConnectPacket":
        protocol_name = reader.string()
        protocol_level = reader.u8()
        connect_flags = reader.u8()
        if connect_flags & 0x01:
            raise PacketError("reserved connect flag is set")
        keep_alive = reader.u16()
        client_id = reader.string()
        will = None
        if connect_flags & 0x04:
            will = (reader.string(), reader.binary())
        user_name = reader.string() if connect_flags & 0x80 else None
        password = reader.binary() if connect_flags & 0x40 else None
        return cls(
            client_id=client_id,
            keep_alive=keep_alive,
            clean_session=bool(connect_flags & 0x02),
            will=will,
            will_qos=_qos((connect_flags >> 3) & 0x03),
            will_retain=bool(connect_flags & 0x20),
            user_name=user_name,
            password=password,
            protocol_name=protocol_name,
            protocol_level=protocol_level,
        )


@dataclass
class ConnackPacket:
    session_present: bool = False
    return_code: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.return_code <= 0xFF:
            raise PacketError("connack return code out of range")

    def encode(self) -> bytes:
        return _frame(0x20, bytes([int(self.session_present), self.return_code]))

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "ConnackPacket":
        ack_flags = reader.u8()
        if ack_flags & 0xFE:
            raise PacketError("reserved connack flags are set")
        return cls(bool(ack_flags & 0x01), reader.u8())


@dataclass
class PublishPacket:
    topic_name: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    packet_identifier: Optional[int] = None
    dup: bool = False
    retain: bool = False

    def __post_init__(self) -> None:
        try:
            validate_topic_name(self.topic_name)
        except InvalidTopicName as exc:
            raise PacketError(str(exc)) from exc
        self.qos = _qos(self.qos)
        self.payload = bytes(self.payload)
        if self.qos == QoS.AT_MOST_ONCE:
            if self.packet_identifier is not None:
                raise PacketError("QoS 0 publish must not carry a packet identifier")
        elif self.packet_identifier is None:
            raise PacketError("QoS 1 and 2 publishes need a packet identifier")
        else:
            _check_identifier(self.packet_identifier)

    def encode(self) -> bytes:
        first = 0x30 | (int(self.dup) << 3) | (int(self.qos) << 1) | int(self.retain)
        body = _string(self.topic_name)
        if self.packet_identifier is not None:
            body += _u16(self.packet_identifier)
        return _frame(first, body + self.payload)

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "PublishPacket":
        qos = _qos((flags >> 1) & 0x03)
        topic_name = reader.string()
        packet_identifier = reader.u16() if qos != QoS.AT_MOST_ONCE else None
        return cls(
            topic_name=topic_name,
            payload=reader.rest(),
            qos=qos,
            packet_identifier=packet_identifier,
            dup=bool(flags & 0x08),
            retain=bool(flags & 0x01),
        )


@dataclass
class SubscribePacket:
    packet_identifier: int
    subscribes: Tuple[Tuple[str, QoS], ...]

    def __post_init__(self) -> None:
        _check_identifier(self.packet_identifier)
        self.subscribes = tuple(
            (_validate_filter(topic_filter), _qos(qos)) for topic_filter, qos in self.subscribes
        )
        if not self.subscribes:
            raise PacketError("subscribe packet without topic filters")

    def encode(self) -> bytes:
        body = _u16(self.packet_identifier) + b"".join(
            _string(topic_filter) + bytes([int(qos)]) for topic_filter, qos in self.subscribes
        )
        return _frame(0x82, body)

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "SubscribePacket":
        packet_identifier = reader.u16()
        subscribes = []
        while not reader.at_end():
            topic_filter = reader.string()
            options = reader.u8()
            if options & 0xFC:
                raise PacketError("reserved subscription option bits are set")
            subscribes.append((topic_filter, _qos(options)))
        return cls(packet_identifier, tuple(subscribes))


@dataclass
class SubackPacket:
    packet_identifier: int
    return_codes: Tuple[int, ...]

    def __post_init__(self) -> None:
        _check_identifier(self.packet_identifier)
        self.return_codes = tuple(int(code) for code in self.return_codes)
        if not self.return_codes:
            raise PacketError("suback packet without return codes")
        allowed = {int(qos) for qos in QoS} | {_SUBACK_FAILURE}
        if any(code not in allowed for code in self.return_codes):
            raise PacketError("invalid suback return code")

    def encode(self) -> bytes:
        return _frame(0x90, _u16(self.packet_identifier) + bytes(self.return_codes))

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "SubackPacket":
        packet_identifier = reader.u16()
        return cls(packet_identifier, tuple(reader.rest()))


@dataclass
class UnsubscribePacket:
    packet_identifier: int
    topic_filters: Tuple[str, ...]

    def __post_init__(self) -> None:
        _check_identifier(self.packet_identifier)
        self.topic_filters = tuple(_validate_filter(f) for f in self.topic_filters)
        if not self.topic_filters:
            raise PacketError("unsubscribe packet without topic filters")

    def encode(self) -> bytes:
        body = _u16(self.packet_identifier) + b"".join(_string(f) for f in self.topic_filters)
        return _frame(0xA2, body)

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "UnsubscribePacket":
        packet_identifier = reader.u16()
        filters = []
        while not reader.at_end():
            filters.append(reader.string())
        return cls(packet_identifier, tuple(filters))


@dataclass
class UnsubackPacket:
    packet_identifier: int

    def __post_init__(self) -> None:
        _check_identifier(self.packet_identifier)

    def encode(self) -> bytes:
        return _frame(0xB0, _u16(self.packet_identifier))

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "UnsubackPacket":
        return cls(reader.u16())


@dataclass
class PingreqPacket:
    def encode(self) -> bytes:
        return _frame(0xC0, b"")

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "PingreqPacket":
        return cls()


@dataclass
class PingrespPacket:
    def encode(self) -> bytes:
        return _frame(0xD0, b"")

    @classmethod
    def _decode(cls, flags: int, reader: _Reader) -> "PingrespPacket":
        return cls()


Packet = Union[
    ConnectPacket,
    ConnackPacket,
    PublishPacket,
    SubscribePacket,
    SubackPacket,
    UnsubscribePacket,
    UnsubackPacket,
    PingreqPacket,
    PingrespPacket,
]

# Packet type -> (required fixed header flags or None if variable, decoder)
_DECODERS: Dict[int, Tuple[Optional[int], Callable[[int, _Reader], Packet]]] = {
    1: (0x0, ConnectPacket._decode),
    2: (0x0, ConnackPacket._decode),
    3: (None, PublishPacket._decode),
    8: (0x2, SubscribePacket._decode),
    9: (0x0, SubackPacket._decode),
    10: (0x2, UnsubscribePacket._decode),
    11: (0x0, UnsubackPacket._decode),
    12: (0x0, PingreqPacket._decode),
    13: (0x0, PingrespPacket._decode),
}


def decode_packet(data: bytes) -> Packet:
    """Decode exactly one complete packet from ``data``."""
    data = bytes(data)
    if not data:
        raise PacketError("empty packet")
    packet_type, flags = data[0] >> 4, data[0] & 0x0F
    length, offset = _decode_length(data)
    body = data[offset:]
    if len(body) != length:
        raise PacketError("packet length does not match the frame")
    try:
        required_flags, decoder = _DECODERS[packet_type]
    except KeyError:
        raise PacketError(f"unsupported packet type {packet_type}") from None
    if required_flags is not None and flags != required_flags:
        raise PacketError("invalid fixed header flags")
    reader = _Reader(body)
    packet = decoder(flags, reader)
    reader.finish()
    return packet