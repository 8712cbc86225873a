"""HTTP router with per-method route tables and handler chains.

A router is configured first (routes, middleware, mounted sub-routers), then
finalized and served. It speaks RSGI so Granian can serve it directly:

    granian --interface rsgi app:router
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Iterator
from contextvars import ContextVar
from enum import Enum
from functools import reduce
from typing import Literal, Self
from urllib.parse import parse_qs

from .context import Context, TrackingHTTPProtocol
from .rsgi import Handler, HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler
from .table import (
    HTTP_METHODS,
    TOP_LEVEL_MIDDLEWARE,
    Match,
    MatchFailure,
    Method,
    NoMatch,
    RouteTables,
    format_routes,
    match,
    merge_tables,
    mount_tables,
    new_tables,
    register,
    strip_trailing_slash,
)

logger = logging.getLogger(__name__)

path_params: ContextVar[dict[str, str]] = ContextVar("path_params")
http_route: ContextVar[str] = ContextVar("http_route")


class Outcome(Enum):
    """How the router resolved a request, before any handler ran."""

    MATCHED = "matched"
    NOT_FOUND = "not_found"
    MATCH_FAILURE = "match_failure"  # matching raised, answered like NOT_FOUND
    NOT_IMPLEMENTED = "not_implemented"


dispatch_outcome: ContextVar[Outcome] = ContextVar("dispatch_outcome")

type HTTPMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

NOT_FOUND_BODY = "Route not found"
NOT_IMPLEMENTED_BODY = "HTTP Dispatch method not implemented"


class Router:
    __slots__ = ("_finalized", "_middleware", "_server_name", "_tables", "_wrappers")
    _tables: RouteTables
    _wrappers: tuple[Middleware, ...]
    _middleware: tuple[Handler, ...]
    _finalized: bool

    def __init__(self, *, server_name: str = "pathmux") -> None:
        self._tables = new_tables()
        self._wrappers = ()
        self._middleware = ()
        self._server_name = server_name
        self._finalized = False

    # --- RSGI -----------------------------------------------------------------
    def __rsgi_init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.finalize()

    def __rsgi_del__(self, loop: asyncio.AbstractEventLoop) -> None:
        pass

    async def __rsgi__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        if scope.proto != "http":
            logger.error("unsupported protocol %s for %s", scope.proto, scope.path)
            return
        await self.dispatch(scope, proto)

    # --- lifecycle ------------------------------------------------------------
    def finalize(self) -> None:
        """Freeze the router. Idempotent.

        After this no route, middleware or sub-router can be added, so route
        tables are read-only while requests are served. Called on RSGI server
        startup and on the first dispatch.
        """
        if self._finalized:
            return
        middleware = self._tables[Method.MIDDLEWARE]
        route = middleware.static_routes.get(TOP_LEVEL_MIDDLEWARE)
        self._middleware = tuple(route.callbacks) if route is not None else ()
        self._finalized = True
        logger.debug(
            "router finalized: %d routes, %d middleware",
            sum(len(self._tables[m]) for m in HTTP_METHODS),
            len(self._middleware),
        )

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _check_mutable(self) -> None:
        if self._finalized:
            msg = "router is finalized"
            raise RuntimeError(msg)

    # --- registration ---------------------------------------------------------
    def _register(
        self, method: Method, pattern: str, handlers: tuple[Handler, ...]
    ) -> Self:
        self._check_mutable()
        register(self._tables[method], pattern, handlers)
        logger.debug(
            "registered %s %s (%d handlers)", method.value, pattern, len(handlers)
        )
        return self

    def method(self, method: HTTPMethod, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for method."""
        key = Method.parse(method)
        if key is None:
            msg = f"unsupported method {method!r}"
            raise ValueError(msg)
        return self._register(key, pattern, handlers)

    def get(self, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for GET."""
        return self._register(Method.GET, pattern, handlers)

    def post(self, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for POST."""
        return self._register(Method.POST, pattern, handlers)

    def put(self, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for PUT."""
        return self._register(Method.PUT, pattern, handlers)

    def patch(self, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for PATCH."""
        return self._register(Method.PATCH, pattern, handlers)

    def delete(self, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for DELETE."""
        return self._register(Method.DELETE, pattern, handlers)

    def all(self, pattern: str, *handlers: Handler) -> Self:
        """Registers handlers at pattern for GET, POST, PUT, PATCH and DELETE."""
        if not handlers:
            msg = "No callback function provided"
            raise ValueError(msg)
        for method in HTTP_METHODS:
            self._register(method, pattern, handlers)
        return self

    def use(self, *handlers: Handler) -> Self:
        """Adds top-level middleware, run before the chain of every matched route."""
        if not handlers:
            msg = "No middleware callback function provided"
            raise ValueError(msg)
        return self._register(Method.MIDDLEWARE, TOP_LEVEL_MIDDLEWARE, handlers)

    def use_path(self, pattern: str, *handlers: Handler) -> Self:
        """Adds middleware at pattern for every method.

        It joins the chain of that pattern, so it runs before handlers
        registered after it.
        """
        if not handlers:
            msg = "No middleware callback function provided"
            raise ValueError(msg)
        return self.all(pattern, *handlers)

    def wrap(self, *middleware: Middleware) -> Self:
        """Adds RSGI middleware around the dispatch of every request.

        Unlike chain handlers these also see 404 and 501 responses. First
        added is outermost.
        """
        self._check_mutable()
        self._wrappers = self._wrappers + middleware
        return self

    def mount(self, router: Router) -> Self:
        """Merges in all routes and top-level middleware of another router."""
        self._check_mountable(router)
        merge_tables(self._tables, router._tables)
        logger.debug("mounted router with %d routes", _route_count(router._tables))
        return self

    def mount_at(self, prefix: str, router: Router) -> Self:
        """Merges in all routes of another router under prefix.

        The other router's top-level middleware only applies to its own routes.
        """
        if not prefix.startswith("/"):
            msg = f"mount path must start with '/', provided {prefix=}"
            raise ValueError(msg)
        if prefix.endswith("/") and prefix != "/":
            msg = "mount path cannot end in /"
            raise ValueError(msg)
        self._check_mountable(router)
        mount_tables(self._tables, prefix, router._tables)
        logger.debug(
            "mounted router with %d routes at %s", _route_count(router._tables), prefix
        )
        return self

    def _check_mountable(self, router: Router) -> None:
        self._check_mutable()
        if router is self:
            msg = "cannot mount a router onto itself"
            raise ValueError(msg)
        if router._wrappers:
            msg = "mounted router has RSGI middleware, add it with wrap() on the parent"
            raise ValueError(msg)

    # --- introspection --------------------------------------------------------
    def routes(self) -> Iterator[tuple[str, str]]:
        """Yields (method, pattern) for every registered route, in table order."""
        for method in HTTP_METHODS:
            table = self._tables[method]
            for path in table.static_routes:
                yield method.value, path
            for bucket in sorted(table.named_partitions):
                for entry in table.named_partitions[bucket]:
                    yield method.value, entry.pattern

    def format_routes(self) -> str:
        return format_routes(self._tables)

    # --- dispatch -------------------------------------------------------------
    async def dispatch(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        """Routes one request, always writing a response for unmatched ones."""
        await self.handle(scope, proto)

    async def handle(
        self, scope: HTTPScope, proto: HTTPProtocol, *, not_found: bool = True
    ) -> bool:
        """Routes one request, returns False if no route matched.

        With `not_found=False` nothing is written for an unmatched request so
        the caller can fall back to another handler.
        """
        if not self._finalized:
            self.finalize()

        method = Method.parse(scope.method)
        if method is None:
            logger.error("HTTP method %s is not supported", scope.method)
            await self._run(
                Outcome.NOT_IMPLEMENTED, {}, "", self._not_implemented, scope, proto
            )
            return True

        path, query_string = split_url(scope.path, scope.query_string)
        query = parse_qs(query_string, keep_blank_values=True) if query_string else {}
        params: dict[str, str] = {}

        result = match(self._tables[method], path, params)
        match result:
            case Match(callbacks=callbacks, pattern=pattern):
                endpoint = self._chain((*self._middleware, *callbacks), params, query)
                await self._run(
                    Outcome.MATCHED, params, pattern, endpoint, scope, proto
                )
            case MatchFailure(error=error):
                logger.error("URI not found for %s", path, exc_info=error)
                await self._run(
                    Outcome.MATCH_FAILURE, {}, "", self._not_found, scope, proto
                )
            case NoMatch():
                if not not_found:
                    return False
                logger.warning("Route not found for %s", path)
                await self._run(
                    Outcome.NOT_FOUND, {}, "", self._not_found, scope, proto
                )
        return True

    async def _run(  # noqa: PLR0913
        self,
        outcome: Outcome,
        params: dict[str, str],
        route: str,
        endpoint: RSGIHTTPHandler,
        scope: HTTPScope,
        proto: HTTPProtocol,
    ) -> None:
        handler = reduce(lambda h, m: m(h), reversed(self._wrappers), endpoint)
        tracked = TrackingHTTPProtocol(proto)
        outcome_token = dispatch_outcome.set(outcome)
        params_token = path_params.set(params)
        route_token = http_route.set(route)
        try:
            await handler(scope, tracked)
        except Exception:  # noqa: BLE001  - wrapper errors never reach the server
            logger.exception(
                "RSGI middleware failed for %s %s", scope.method, scope.path
            )
            if not tracked.started:
                self._respond(tracked, 404, NOT_FOUND_BODY)
        finally:
            http_route.reset(route_token)
            path_params.reset(params_token)
            dispatch_outcome.reset(outcome_token)

    def _chain(
        self,
        callbacks: tuple[Handler, ...],
        params: dict[str, str],
        query: dict[str, list[str]],
    ) -> RSGIHTTPHandler:
        async def run_chain(scope: HTTPScope, proto: HTTPProtocol) -> None:
            ctx = Context(self, scope, proto, params, query)
            try:
                for callback in callbacks:
                    rv = callback(ctx)
                    if inspect.isawaitable(rv):
                        rv = await rv
                    if rv:  # handled, stop the chain
                        ctx.end()
                        return
            except Exception:  # noqa: BLE001  - handler errors never reach the server
                logger.exception("handler failed for %s %s", scope.method, scope.path)
                if not ctx.finished:
                    self._respond(ctx.response, 404, NOT_FOUND_BODY)

        return run_chain

    async def _not_found(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        self._respond(proto, 404, NOT_FOUND_BODY)

    async def _not_implemented(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        self._respond(proto, 501, NOT_IMPLEMENTED_BODY)

    def _respond(self, proto: HTTPProtocol, status: int, body: str) -> None:
        proto.response_str(
            status,
            [("content-type", "text/plain"), ("server", self._server_name)],
            body,
        )


def split_url(path: str, query_string: str = "") -> tuple[str, str]:
    """Split off the query string and strip a trailing slash.

    A query string embedded in path wins over the separate one.
    """
    path, sep, query = path.partition("?")
    if not sep:
        query = query_string
    return strip_trailing_slash(path) or "/", query


def _route_count(tables: RouteTables) -> int:
    return sum(len(tables[m]) for m in HTTP_METHODS)
