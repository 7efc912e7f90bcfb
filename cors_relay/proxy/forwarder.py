"""
Outbound leg of the relay: re-issue an inbound request against the backend.

``forward`` never raises for transport problems. It returns either an
``UpstreamResponse`` with an unread, undecoded body stream or an
``UpstreamFailure`` tagged with what went wrong.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional, Tuple, Union
from urllib.parse import quote, urlsplit

import anyio
import httpx
from fastapi import Request
from starlette.requests import ClientDisconnect

from cors_relay.config import ProxyConfig
from cors_relay.cors.policy import is_cors_response_header
from cors_relay.utils import client_host
from cors_relay.utils.exception_logging import (
    find_exception_in_exception_groups,
    format_exception_message,
)

logger = logging.getLogger("uvicorn.error")

RawHeaders = List[Tuple[bytes, bytes]]

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

FORWARDED_FOR = "x-forwarded-for"


class FailureKind(str, Enum):
    """Why an upstream call produced no response."""

    CONNECT_FAILED = "connect-failed"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol-error"
    CLIENT_ABORTED = "client-aborted"


@dataclass
class UpstreamResponse:
    status_code: int
    headers: RawHeaders
    response: httpx.Response

    def aiter_raw(self) -> AsyncIterator[bytes]:
        """Body bytes exactly as the backend sent them (no content decoding)."""
        return self.response.aiter_raw()

    async def aclose(self) -> None:
        await self.response.aclose()


@dataclass
class UpstreamFailure:
    kind: FailureKind
    detail: str


UpstreamResult = Union[UpstreamResponse, UpstreamFailure]


def connection_tokens(raw_headers: RawHeaders) -> set:
    """Header names listed in ``Connection`` are hop-by-hop for this leg too."""
    tokens = set()
    for name, value in raw_headers:
        if name.lower() == b"connection":
            for token in value.decode("latin-1").split(","):
                if token.strip():
                    tokens.add(token.strip().lower())
    return tokens


def is_hop_by_hop(name: str, extra: Optional[set] = None) -> bool:
    lowered = name.lower()
    return lowered in HOP_BY_HOP_HEADERS or bool(extra and lowered in extra)


def build_target(config: ProxyConfig, raw_path: bytes, query_string: bytes) -> Tuple[str, bytes]:
    """
    Build the outbound URL and the exact request target.

    The URL is what httpx connects to; the target is sent on the request
    line untouched, so dot segments and percent-escapes are never
    normalised away. A base path on the backend URL is prefixed.

    Returns:
        (url, target) where target is ``<base path><raw path>[?<query>]``
    """
    backend = urlsplit(config.backend_url)
    base_path = backend.path.rstrip("/").encode("ascii")
    path = raw_path or b"/"
    if not path.startswith(b"/"):
        path = b"/" + path
    target = base_path + path
    if query_string:
        target += b"?" + query_string
    return f"{backend.scheme}://{backend.netloc}{target.decode('latin-1')}", target


def request_target(config: ProxyConfig, request: Request) -> Tuple[str, bytes]:
    """``build_target`` for an inbound request, using the path bytes as received."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        # Servers that omit raw_path only give the decoded path
        path = request.scope.get("path") or "/"
        raw_path = quote(path, safe="/:@!$&'()*+,;=").encode("ascii")
    return build_target(config, raw_path, request.scope.get("query_string", b""))


def prepare_headers(raw_headers: RawHeaders, client: str, scheme: str) -> RawHeaders:
    """
    Prepare headers for forwarding to the backend.

    Drops hop-by-hop headers, ``Host`` (httpx sets the backend's) and any
    CORS response header, keeps duplicates in order, and records the
    client in ``X-Forwarded-*``.
    """
    extra_hop = connection_tokens(raw_headers)
    forwarded_for = []
    original_host = None
    headers: RawHeaders = []

    for name, value in raw_headers:
        text_name = name.decode("latin-1").lower()
        if is_hop_by_hop(text_name, extra_hop) or is_cors_response_header(text_name):
            continue
        if text_name == "host":
            original_host = value
            continue
        if text_name == FORWARDED_FOR:
            forwarded_for.append(value.decode("latin-1"))
            continue
        headers.append((name, value))

    forwarded_for.append(client)
    headers.append((b"x-forwarded-for", ", ".join(forwarded_for).encode("latin-1")))
    headers.append((b"x-forwarded-proto", scheme.encode("latin-1")))
    if original_host:
        headers.append((b"x-forwarded-host", original_host))
    return headers


def has_body(raw_headers: RawHeaders) -> bool:
    """A request carries a body only when its framing says so."""
    for name, value in raw_headers:
        lowered = name.lower()
        if lowered == b"transfer-encoding":
            return True
        if lowered == b"content-length" and value.strip() not in (b"", b"0"):
            return True
    return False


def classify_failure(exception: BaseException) -> FailureKind:
    if find_exception_in_exception_groups(exception, ClientDisconnect) is not None:
        return FailureKind.CLIENT_ABORTED
    # ConnectTimeout is both; a timeout wins so it maps to 504
    if (
        find_exception_in_exception_groups(
            exception, (httpx.TimeoutException, TimeoutError)
        )
        is not None
    ):
        return FailureKind.TIMEOUT
    if find_exception_in_exception_groups(exception, httpx.ConnectError) is not None:
        return FailureKind.CONNECT_FAILED
    return FailureKind.PROTOCOL_ERROR


async def forward(
    client: httpx.AsyncClient,
    config: ProxyConfig,
    request: Request,
    url: str,
    target: bytes,
) -> UpstreamResult:
    """
    Send one request to the backend and return its response headers with
    the body still unread. Exactly one attempt is made; nothing is retried.

    ``upstream_timeout`` bounds every single read and write, and also the
    whole exchange up to the response headers, so a backend trickling
    bytes cannot stretch it.

    Args:
        url: Outbound URL from ``request_target``
        target: Exact request target put on the request line
    """
    raw_headers = list(request.headers.raw)
    headers = prepare_headers(
        raw_headers, client_host(request.client), request.url.scheme
    )
    content = request.stream() if has_body(raw_headers) else None

    try:
        outbound = client.build_request(
            method=request.method,
            url=url,
            headers=headers,
            content=content,
            timeout=httpx.Timeout(config.upstream_timeout),
            extensions={"target": target},
        )
        with anyio.fail_after(config.upstream_timeout):
            response = await client.send(
                outbound, stream=True, follow_redirects=False
            )
    except Exception as e:
        kind = classify_failure(e)
        if isinstance(e, TimeoutError):
            detail = f"no response from backend within {config.upstream_timeout:g}s"
        else:
            detail = format_exception_message(e)
        logger.debug(f"[Forward] {request.method} {url} failed ({kind.value}): {detail}")
        return UpstreamFailure(kind=kind, detail=detail)

    return UpstreamResponse(
        status_code=response.status_code,
        headers=list(response.headers.raw),
        response=response,
    )
