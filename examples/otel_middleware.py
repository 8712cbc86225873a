# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pathmux[otel]",
#     "granian[uvloop]>=2.6.0,<3.0.0",
#     "httpx>=0.28.1,<0.29.0",
#     "opentelemetry-sdk>=1.39.1,<2.0.0",
# ]
#
# [tool.uv.sources]
# pathmux = { path = "../", editable = true }
# ///
"""RSGI OpenTelemetry tracing middleware demo.

Shows usage of otel middleware with an in-memory exporter so traces can be
printed to the console without needing an external collector.
"""

import asyncio
import logging
import sys

import httpx
import uvloop
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from pathmux import Context, Router
from pathmux.middleware.otel import otel

ADDRESS = "127.0.0.1"
PORT = 8000


# --- handlers ---
def hello(ctx: Context) -> None:
    ctx.send("hello world")


async def greet(ctx: Context) -> None:
    ctx.send(f"hello {ctx.params['name']}")


# --- app setup ---
exporter = InMemorySpanExporter()
provider = TracerProvider()
provider.add_span_processor(SimpleSpanProcessor(exporter))

router = Router()
# wrapped middleware also sees the router's own 404 and 501 responses
router.wrap(otel(tracer_provider=provider))
router.get("/", hello)
router.get("/greet/:name", greet)


# --- run ---
async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    task = asyncio.create_task(serve())
    await asyncio.sleep(0.1)
    await requests()
    provider.shutdown()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def serve() -> None:
    from granian.server.embed import Server

    server = Server(router, address=ADDRESS, port=PORT, log_access=True)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await server.shutdown()


async def requests() -> None:
    base_url = f"http://{ADDRESS}:{PORT}"

    async with httpx.AsyncClient(base_url=base_url) as client:
        for method, path in [
            ("GET", "/"),
            ("GET", "/greet/world"),
            ("GET", "/greet/pathmux"),
            ("GET", "/nonexistent"),
            ("OPTIONS", "/"),
        ]:
            print(f"--- {method} {path} ---", file=sys.stderr)
            await client.request(method, path)

    print("--- Collected spans ---", file=sys.stderr)
    for span in exporter.get_finished_spans():
        attrs = span.attributes or {}
        print(
            f"  {span.name:<30} "
            f"status={attrs['http.response.status_code']:<4} "
            f"route={attrs.get('http.route', ''):<20} "  # not set on 404/501
            f"path={attrs['url.path']}",
            file=sys.stderr,
        )


if __name__ == "__main__":
    uvloop.run(main())
