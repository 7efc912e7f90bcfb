"""
Tests for the outbound leg: target construction, header preparation, body
detection and failure tagging.
"""

from dataclasses import replace

import anyio
import httpx
import pytest
from fastapi import Request

from cors_relay.config import ProxyConfig
from cors_relay.proxy.forwarder import (
    FailureKind,
    UpstreamFailure,
    UpstreamResponse,
    build_target,
    classify_failure,
    forward,
    has_body,
    prepare_headers,
    request_target,
)
from cors_relay.server import create_http_client
from cors_relay.utils_tests.mock_backend import RecordingBackend, upstream_reply


def make_request(
    method="GET", path="/", query=b"", headers=(), body=b"", disconnect=False
) -> Request:
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("ascii"),
        "root_path": "",
        "query_string": query,
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in headers
        ],
        "server": ("relay.local", 8000),
        "client": ("203.0.113.7", 50123),
    }

    async def receive():
        if disconnect:
            return {"type": "http.disconnect"}
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


async def forward_request(client, config, request):
    url, target = request_target(config, request)
    return await forward(client, config, request, url, target)


@pytest.fixture
def config():
    return ProxyConfig(backend_url="https://vps.kodub.com", use_tls=False)


class TestBuildTarget:
    def test_path_and_query_preserved(self, config):
        url, target = build_target(config, b"/leaderboard", b"id=42")
        assert url == "https://vps.kodub.com/leaderboard?id=42"
        assert target == b"/leaderboard?id=42"

    def test_dot_segments_not_collapsed(self, config):
        _, target = build_target(config, b"/a/../b/./c", b"")
        assert target == b"/a/../b/./c"

    def test_percent_escapes_kept(self, config):
        _, target = build_target(config, b"/files/a%2Fb", b"q=hello%20world&tag=x")
        assert target == b"/files/a%2Fb?q=hello%20world&tag=x"

    def test_empty_path_becomes_root(self, config):
        url, target = build_target(config, b"", b"")
        assert target == b"/"
        assert url == "https://vps.kodub.com/"

    def test_backend_base_path_prefixed(self, config):
        config = replace(config, backend_url="http://backend:8080/api")
        url, target = build_target(config, b"/users", b"")
        assert url == "http://backend:8080/api/users"
        assert target == b"/api/users"


class TestRequestTarget:
    def test_raw_path_used_as_received(self, config):
        request = make_request(path="/a/../b", query=b"x=%2F")
        url, target = request_target(config, request)
        assert target == b"/a/../b?x=%2F"
        assert url == "https://vps.kodub.com/a/../b?x=%2F"

    def test_missing_raw_path_is_quoted(self, config):
        request = make_request()
        del request.scope["raw_path"]
        request.scope["path"] = "/café/menu"
        _, target = request_target(config, request)
        assert target == b"/caf%C3%A9/menu"


class TestPrepareHeaders:
    def test_hop_by_hop_and_host_removed(self):
        raw = [
            (b"host", b"relay.local:8000"),
            (b"connection", b"keep-alive, x-trace-hop"),
            (b"keep-alive", b"timeout=5"),
            (b"proxy-authorization", b"Basic Zm9vOmJhcg=="),
            (b"transfer-encoding", b"chunked"),
            (b"upgrade", b"websocket"),
            (b"x-trace-hop", b"1"),
            (b"accept", b"application/json"),
        ]
        names = [name for name, _ in prepare_headers(raw, "203.0.113.7", "https")]
        for dropped in (
            b"host",
            b"connection",
            b"keep-alive",
            b"proxy-authorization",
            b"transfer-encoding",
            b"upgrade",
            b"x-trace-hop",
        ):
            assert dropped not in names
        assert b"accept" in names

    def test_cors_response_headers_stripped_request_ones_kept(self):
        raw = [
            (b"access-control-allow-origin", b"*"),
            (b"access-control-request-method", b"GET"),
        ]
        names = [name for name, _ in prepare_headers(raw, "1.2.3.4", "http")]
        assert b"access-control-allow-origin" not in names
        assert b"access-control-request-method" in names

    def test_duplicates_kept_in_order(self):
        raw = [(b"cookie", b"a=1"), (b"x-tag", b"one"), (b"x-tag", b"two")]
        headers = prepare_headers(raw, "1.2.3.4", "http")
        assert [v for n, v in headers if n == b"x-tag"] == [b"one", b"two"]

    def test_forwarded_headers(self):
        raw = [(b"host", b"relay.local"), (b"x-forwarded-for", b"198.51.100.1")]
        headers = dict(prepare_headers(raw, "203.0.113.7", "https"))
        assert headers[b"x-forwarded-for"] == b"198.51.100.1, 203.0.113.7"
        assert headers[b"x-forwarded-proto"] == b"https"
        assert headers[b"x-forwarded-host"] == b"relay.local"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ([], False),
        ([(b"content-length", b"0")], False),
        ([(b"content-length", b"12")], True),
        ([(b"transfer-encoding", b"chunked")], True),
    ],
)
def test_has_body(raw, expected):
    assert has_body(raw) is expected


class TestClassifyFailure:
    def test_connect_timeout_is_timeout(self):
        assert classify_failure(httpx.ConnectTimeout("slow")) is FailureKind.TIMEOUT

    def test_read_timeout_is_timeout(self):
        assert classify_failure(httpx.ReadTimeout("slow")) is FailureKind.TIMEOUT

    def test_deadline_exceeded_is_timeout(self):
        assert classify_failure(TimeoutError()) is FailureKind.TIMEOUT

    def test_connect_error(self):
        assert classify_failure(httpx.ConnectError("refused")) is FailureKind.CONNECT_FAILED

    def test_protocol_error(self):
        assert (
            classify_failure(httpx.RemoteProtocolError("bad status line"))
            is FailureKind.PROTOCOL_ERROR
        )

    def test_unknown_error_is_protocol_error(self):
        assert classify_failure(RuntimeError("boom")) is FailureKind.PROTOCOL_ERROR

    def test_exception_group_is_searched(self):
        group = ExceptionGroup("task group", [ValueError("x"), httpx.ConnectError("no")])
        assert classify_failure(group) is FailureKind.CONNECT_FAILED


class TestForward:
    @pytest.mark.asyncio
    async def test_success_returns_unread_stream(self, config):
        backend = RecordingBackend()
        backend.reply = lambda request: upstream_reply(
            201, b'{"id": 1}', [("content-type", "application/json")]
        )
        async with create_http_client(
            config, transport=httpx.MockTransport(backend)
        ) as client:
            result = await forward_request(
                client,
                config,
                make_request("POST", "/items", headers=[("content-length", "9")], body=b'{"a": 1}\n'),
            )
            assert isinstance(result, UpstreamResponse)
            assert result.status_code == 201
            assert (b"content-type", b"application/json") in result.headers
            assert not result.response.is_stream_consumed
            body = b"".join([chunk async for chunk in result.aiter_raw()])
            await result.aclose()

        assert body == b'{"id": 1}'
        assert backend.bodies == [b'{"a": 1}\n']
        assert backend.requests[0].extensions["target"] == b"/items"

    @pytest.mark.asyncio
    async def test_get_sends_no_body_and_no_client_defaults(self, config):
        backend = RecordingBackend()
        async with create_http_client(
            config, transport=httpx.MockTransport(backend)
        ) as client:
            result = await forward_request(client, config, make_request("GET", "/"))
            await result.aclose()

        request = backend.requests[0]
        assert backend.bodies == [b""]
        assert "user-agent" not in request.headers
        assert "accept-encoding" not in request.headers
        assert request.headers["host"] == "vps.kodub.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,kind",
        [
            (httpx.ConnectTimeout, FailureKind.TIMEOUT),
            (httpx.ConnectError, FailureKind.CONNECT_FAILED),
            (httpx.RemoteProtocolError, FailureKind.PROTOCOL_ERROR),
        ],
    )
    async def test_transport_errors_become_failures(self, config, error, kind):
        def handler(request):
            raise error("upstream trouble", request=request)

        async with create_http_client(
            config, transport=httpx.MockTransport(handler)
        ) as client:
            result = await forward_request(client, config, make_request())

        assert isinstance(result, UpstreamFailure)
        assert result.kind is kind
        assert "upstream trouble" in result.detail

    @pytest.mark.asyncio
    async def test_slow_backend_bounded_by_total_timeout(self, config):
        config = replace(config, upstream_timeout=0.2)
        calls = []

        async def handler(request):
            # Each step stays under the per-read timeout; together they do not
            calls.append(request)
            for _ in range(20):
                await anyio.sleep(0.05)
            return upstream_reply(200, b"late")

        async with create_http_client(
            config, transport=httpx.MockTransport(handler)
        ) as client:
            with anyio.fail_after(5):
                result = await forward_request(client, config, make_request())

        assert isinstance(result, UpstreamFailure)
        assert result.kind is FailureKind.TIMEOUT
        assert "0.2s" in result.detail
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_client_disconnect_during_upload(self, config):
        backend = RecordingBackend()
        async with create_http_client(
            config, transport=httpx.MockTransport(backend)
        ) as client:
            result = await forward_request(
                client,
                config,
                make_request("PUT", "/upload", headers=[("content-length", "100")], disconnect=True),
            )

        assert isinstance(result, UpstreamFailure)
        assert result.kind is FailureKind.CLIENT_ABORTED
        assert backend.requests == []
