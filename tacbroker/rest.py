"""REST endpoints that expose topics as HTTP resources."""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Iterable

from aiohttp import web

from .topic import Topic

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _get_handler(topic: Topic) -> Handler:
    async def handler(request: web.Request) -> web.StreamResponse:
        payload = await topic.try_get_as_bytes()
        if payload is None:
            raise web.HTTPNotFound(text="Don't have a retained message yet")
        return web.Response(body=payload, content_type="application/json")

    return handler


def _put_handler(topic: Topic) -> Handler:
    async def handler(request: web.Request) -> web.StreamResponse:
        body = await request.read()
        try:
            await topic.set_from_bytes(body)
        except ValueError:
            raise web.HTTPBadRequest(text="Malformed payload") from None
        return web.Response(status=204)

    return handler


def register(app: web.Application, topics: Iterable[Topic]) -> None:
    """Mount a GET route for each readable and PUT/POST routes for each writable topic.

    A read-only and a write-only topic may share a path; for a method
    registered by several topics the last one wins.
    """
    routes: Dict[str, Dict[str, Topic]] = {}
    for topic in topics:
        methods = routes.setdefault(topic.path(), {})
        if topic.web_readable():
            methods["GET"] = topic
        if topic.web_writable():
            methods["PUT"] = topic
            methods["POST"] = topic

    for path, methods in routes.items():
        if not methods:
            continue
        resource = app.router.add_resource(path)
        for method, topic in methods.items():
            handler = _get_handler(topic) if method == "GET" else _put_handler(topic)
            resource.add_route(method, handler)