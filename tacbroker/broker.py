"""Registration of topics and mounting them as REST and MQTT endpoints."""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

from aiohttp import web

from . import mqtt_conn, rest
from .topic import Decoder, Encoder, Topic


class BrokerBuilder:
    """Collects topics and finally mounts them on a web application."""

    def __init__(self) -> None:
        self._topics: List[Topic] = []
        self._built = False

    def topics(self) -> Tuple[Topic, ...]:
        """The registered topics in registration order."""
        return tuple(self._topics)

    def topic(
        self,
        path: str,
        web_readable: bool = False,
        web_writable: bool = False,
        initial: Any = None,
        retained_length: int = 1,
        encode: Optional[Encoder] = None,
        decode: Optional[Decoder] = None,
    ) -> Topic:
        """Register a new topic.

        A read-only and a write-only topic may share a path, which lets the
        application validate written values before publishing them.
        """
        if self._built:
            raise RuntimeError("broker has already been built")
        topic = Topic(path, web_readable, web_writable, initial, retained_length, encode, decode)
        self._topics.append(topic)
        return topic

    def topic_ro(
        self,
        path: str,
        initial: Any = None,
        encode: Optional[Encoder] = None,
        decode: Optional[Decoder] = None,
    ) -> Topic:
        """Register a topic that is only readable from the outside."""
        return self.topic(path, True, False, initial, 1, encode, decode)

    def topic_rw(
        self,
        path: str,
        initial: Any = None,
        encode: Optional[Encoder] = None,
        decode: Optional[Decoder] = None,
    ) -> Topic:
        """Register a topic that is readable and writable from the outside."""
        return self.topic(path, True, True, initial, 1, encode, decode)

    def topic_wo(
        self,
        path: str,
        initial: Any = None,
        encode: Optional[Encoder] = None,
        decode: Optional[Decoder] = None,
    ) -> Topic:
        """Register a topic that is only writable from the outside."""
        return self.topic(path, False, True, initial, 1, encode, decode)

    def topic_hidden(
        self,
        initial: Any = None,
        encode: Optional[Encoder] = None,
        decode: Optional[Decoder] = None,
    ) -> Topic:
        """Register a topic that is only used internally."""
        return self.topic("/hidden", False, False, initial, 1, encode, decode)

    def build(self, app: web.Application) -> None:
        """Mount all topics on ``app``; no topics can be registered afterwards."""
        if self._built:
            raise RuntimeError("broker has already been built")
        self._built = True
        topics = tuple(self._topics)
        rest.register(app, topics)
        mqtt_conn.register(app, topics)