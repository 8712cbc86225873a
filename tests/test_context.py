import pytest
from conftest import MockHTTPProtocol, mock_scope

from pathmux import Context, Router


def make_context(proto: MockHTTPProtocol, **kwargs) -> Context:
    return Context(Router(), mock_scope("/test"), proto, **kwargs)


def test_defaults() -> None:
    ctx = make_context(MockHTTPProtocol())
    assert ctx.params == {}
    assert ctx.query == {}
    assert not ctx.finished


def test_send_str() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto)
    ctx.send("hello", 201, [("x-request-id", "1")])

    assert ctx.finished
    assert proto.response_status == 201
    assert proto.response_headers == [
        ("content-type", "text/plain; charset=utf-8"),
        ("x-request-id", "1"),
    ]
    assert proto.response_body == b"hello"


def test_send_bytes() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto)
    ctx.send(b"\x00\x01", content_type="application/octet-stream")

    assert proto.response_status == 200
    assert proto.response_headers == [("content-type", "application/octet-stream")]
    assert proto.response_body == b"\x00\x01"


def test_json() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto, params={"id": "42"})
    ctx.json({"id": ctx.params["id"]}, 202)

    assert proto.response_status == 202
    assert proto.response_headers == [("content-type", "application/json")]
    assert proto.response_body == b'{"id": "42"}'


def test_send_twice_raises() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto)
    ctx.send("first")
    with pytest.raises(RuntimeError, match="response already sent"):
        ctx.send("second")
    assert proto.responses == 1


def test_end_sends_empty_response() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto)
    ctx.end()
    ctx.end()

    assert proto.responses == 1
    assert proto.response_status == 200
    assert proto.response_body == b""


def test_end_after_send_is_noop() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto)
    ctx.send("not found", 404)
    ctx.end()

    assert proto.responses == 1
    assert proto.response_status == 404


def test_response_records_status() -> None:
    ctx = make_context(MockHTTPProtocol())
    assert ctx.response.status is None

    ctx.send("created", 201)

    assert ctx.response.status == 201
    assert ctx.response.started


@pytest.mark.asyncio
async def test_direct_protocol_write_marks_finished() -> None:
    proto = MockHTTPProtocol()
    ctx = make_context(proto)
    transport = ctx.response.response_stream(200, [("content-type", "text/plain")])
    await transport.send_str("chunk")

    assert ctx.finished
    assert proto.stream_transport is not None
    assert proto.stream_transport.get_data() == b"chunk"
    ctx.end()
    assert proto.responses == 1


@pytest.mark.asyncio
async def test_body() -> None:
    ctx = make_context(MockHTTPProtocol(body=b'{"name": "ada"}'))
    assert await ctx.body() == b'{"name": "ada"}'


@pytest.mark.asyncio
async def test_handler_reads_body_and_responds() -> None:
    async def create_user(ctx: Context) -> None:
        ctx.send(await ctx.body(), 201, content_type="application/json")

    router = Router()
    router.post("/users", create_user)

    proto = MockHTTPProtocol(body=b'{"name": "ada"}')
    await router.dispatch(mock_scope("/users", "POST"), proto)
    assert proto.response_status == 201
    assert proto.response_body == b'{"name": "ada"}'
