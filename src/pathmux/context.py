"""Per-request execution context handed to every handler in a chain."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .router import Router
    from .rsgi import HTTPProtocol, HTTPScope, HTTPStreamTransport


class TrackingHTTPProtocol:
    """Wraps HTTPProtocol to record the status of the response once started."""

    __slots__ = ("_proto", "status")

    def __init__(self, proto: HTTPProtocol) -> None:
        self._proto = proto
        self.status: int | None = None

    @property
    def started(self) -> bool:
        return self.status is not None

    async def __call__(self) -> bytes:
        return await self._proto()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._proto.__aiter__()

    async def client_disconnect(self) -> None:
        await self._proto.client_disconnect()

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self.status = status
        self._proto.response_empty(status, headers)

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self.status = status
        self._proto.response_str(status, headers, body)

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self.status = status
        self._proto.response_bytes(status, headers, body)

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self.status = status
        self._proto.response_file(status, headers, file)

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None:
        self.status = status
        self._proto.response_file_range(status, headers, file, start, end)

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> HTTPStreamTransport:
        self.status = status
        return self._proto.response_stream(status, headers)


class Context:
    """Wraps the router, the request scope and the response protocol.

    `params` and `query` belong to this request only, they are never shared
    between requests. Handlers may write through the helpers below or call
    the RSGI protocol on `response` directly, either way `finished` reports
    that a response was started.
    """

    __slots__ = ("_proto", "params", "query", "request", "router")

    def __init__(
        self,
        router: Router,
        request: HTTPScope,
        response: HTTPProtocol,
        params: dict[str, str] | None = None,
        query: dict[str, list[str]] | None = None,
    ) -> None:
        self.router = router
        self.request = request
        self._proto = TrackingHTTPProtocol(response)
        self.params = params if params is not None else {}
        self.query = query if query is not None else {}

    @property
    def response(self) -> HTTPProtocol:
        return self._proto

    @property
    def finished(self) -> bool:
        return self._proto.started

    async def body(self) -> bytes:
        """Read the full request body."""
        return await self._proto()

    def send(
        self,
        body: str | bytes = "",
        status: int = 200,
        headers: list[tuple[str, str]] | None = None,
        *,
        content_type: str = "text/plain; charset=utf-8",
    ) -> None:
        if self.finished:
            msg = "response already sent"
            raise RuntimeError(msg)
        response_headers = [("content-type", content_type), *(headers or [])]
        if isinstance(body, bytes):
            self._proto.response_bytes(status, response_headers, body)
        else:
            self._proto.response_str(status, response_headers, body)

    def json(
        self,
        data: Any,
        status: int = 200,
        headers: list[tuple[str, str]] | None = None,
    ) -> None:
        self.send(json.dumps(data), status, headers, content_type="application/json")

    def end(self) -> None:
        """Finalize the response, an empty 200 if nothing was written yet."""
        if not self.finished:
            self._proto.response_empty(200, [])
