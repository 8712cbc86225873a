"""OpenTelemetry tracing and metrics for a Router.

Wrap a router with it and every request the router dispatches gets an HTTP
server span and request metrics, the router's own 404 and 501 answers
included::

    router.wrap(otel())

Besides the HTTP semantic conventions, spans carry what the router knows about
the request: how dispatch resolved it (``pathmux.dispatch.outcome``), and for a
matched route its kind in the route tables (``pathmux.route.kind``: static,
named or regex) and its segment count (``pathmux.route.segments``). A 404
caused by a route that failed to match is marked as an error, a plain miss is
not.

Install with: uv add "pathmux[otel]"
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathmux.rsgi import HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler

try:
    from opentelemetry import metrics, trace
    from opentelemetry.propagate import extract
    from opentelemetry.trace import SpanKind, StatusCode, TracerProvider
except ImportError as e:
    msg = (
        "OpenTelemetry middleware requires the 'otel' extra. "
        "Install with: uv add 'pathmux[otel]'"
    )
    raise ImportError(msg) from e

from pathmux.context import TrackingHTTPProtocol
from pathmux.router import Outcome, dispatch_outcome, http_route, path_params
from pathmux.table import is_static, needs_regex

type Attributes = dict[str, str | int]

# seconds, as advised by the HTTP metrics semantic conventions
_DURATION_BUCKETS = (
    0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25,
    0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0,
)  # fmt: skip


def route_kind(route: str) -> str:
    """Classify a route pattern the way the route tables store it."""
    if is_static(route):
        return "static"
    return "regex" if needs_regex(route) else "named"


def _request_attributes(scope: HTTPScope) -> Attributes:
    attrs: Attributes = {
        "http.request.method": scope.method,
        "url.path": scope.path,
        "url.scheme": scope.scheme,
        "network.protocol.version": scope.http_version,
        "server.address": scope.server,
        "client.address": scope.client,
    }
    if scope.query_string:
        attrs["url.query"] = scope.query_string
    if (user_agent := scope.headers.get("user-agent")) is not None:
        attrs["user_agent.original"] = user_agent
    return attrs


def _dispatch_attributes(route: str, outcome: Outcome) -> Attributes:
    """Attributes shared by the span and both metrics, low cardinality only."""
    attrs: Attributes = {"pathmux.dispatch.outcome": outcome.value}
    if route:
        attrs["http.route"] = route
    return attrs


def _route_attributes(route: str) -> Attributes:
    if not route:
        return {}
    attrs: Attributes = {
        "pathmux.route.kind": route_kind(route),
        "pathmux.route.segments": len(route.split("/")) - 1,
    }
    for name, value in path_params.get({}).items():
        attrs[f"http.route.param.{name}"] = value
    return attrs


@dataclass(slots=True, frozen=True)
class _Instruments:
    tracer: trace.Tracer
    duration: metrics.Histogram
    active_requests: metrics.UpDownCounter

    @classmethod
    def create(
        cls,
        tracer_provider: TracerProvider | None,
        meter_provider: metrics.MeterProvider | None,
    ) -> _Instruments:
        meter = metrics.get_meter("pathmux", meter_provider=meter_provider)
        return cls(
            tracer=trace.get_tracer("pathmux", tracer_provider=tracer_provider),
            duration=meter.create_histogram(
                "http.server.request.duration",
                unit="s",
                description="Duration of HTTP server requests.",
                explicit_bucket_boundaries_advisory=_DURATION_BUCKETS,
            ),
            active_requests=meter.create_up_down_counter(
                "http.server.active_requests",
                unit="{request}",
                description="Number of active HTTP server requests.",
            ),
        )


def otel(
    *,
    tracer_provider: TracerProvider | None = None,
    meter_provider: metrics.MeterProvider | None = None,
) -> Middleware:
    """Create OpenTelemetry tracing and metrics middleware for `Router.wrap`.

    The span is named after the matched route pattern, e.g. ``GET /users/:id``,
    or after the status code when no route matched, e.g. ``GET 404``. Trace
    context is extracted from the request headers (e.g. ``traceparent``).
    Only depends on ``opentelemetry-api``; users bring their own SDK and
    exporters.

    Metrics emitted:
        - ``http.server.request.duration`` (histogram, seconds)
        - ``http.server.active_requests`` (up-down counter)

    Args:
        tracer_provider: Optional TracerProvider. If None, uses the global provider.
        meter_provider: Optional MeterProvider. If None, uses the global provider.
    """
    instruments = _Instruments.create(tracer_provider, meter_provider)

    def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def traced_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            route = http_route.get("")
            # outside a Router only the route is known
            outcome = dispatch_outcome.get(
                Outcome.MATCHED if route else Outcome.NOT_FOUND
            )
            method = scope.method

            shared: Attributes = {
                "http.request.method": method,
                "url.scheme": scope.scheme,
                **_dispatch_attributes(route, outcome),
            }
            span_attrs: Attributes = {
                **_request_attributes(scope),
                **shared,
                **_route_attributes(route),
            }

            instruments.active_requests.add(1, shared)
            start = time.perf_counter()
            with instruments.tracer.start_as_current_span(
                f"{method} {route}" if route else method,
                context=extract(scope.headers),
                kind=SpanKind.SERVER,
                attributes=span_attrs,
                record_exception=True,
                set_status_on_exception=True,
            ) as span:
                tracked = TrackingHTTPProtocol(proto)
                try:
                    await handler(scope, tracked)
                finally:
                    instruments.active_requests.add(-1, shared)
                    duration_attrs = dict(shared)
                    if tracked.status is not None:
                        span.set_attribute("http.response.status_code", tracked.status)
                        duration_attrs["http.response.status_code"] = tracked.status
                        if not route:
                            span.update_name(f"{method} {tracked.status}")
                        if tracked.status >= 500:
                            span.set_status(StatusCode.ERROR)
                    if outcome is Outcome.MATCH_FAILURE:
                        span.set_attribute("error.type", outcome.value)
                        span.set_status(StatusCode.ERROR, "route matching failed")
                    instruments.duration.record(
                        time.perf_counter() - start, duration_attrs
                    )

        return traced_handler

    return middleware
