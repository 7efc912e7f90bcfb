"""
Turn a CORS decision plus an upstream outcome into the single response the
browser receives.

Upstream CORS headers never survive; the decision's headers replace them, so
each response carries at most one ``Access-Control-Allow-Origin``.
"""

import logging
from typing import AsyncIterator, List, Tuple, Union

import anyio
import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from cors_relay.cors.policy import CorsDecision, cors_headers, is_cors_response_header
from cors_relay.proxy.forwarder import (
    FailureKind,
    UpstreamFailure,
    UpstreamResponse,
    UpstreamResult,
    connection_tokens,
    is_hop_by_hop,
)
from cors_relay.utils.exception_logging import log_exception_with_details


class _Preflight:
    def __repr__(self) -> str:
        return "PREFLIGHT"


# Outcome of a preflight request: answered here, backend never contacted
PREFLIGHT = _Preflight()

Outcome = Union[_Preflight, UpstreamResult]

logger = logging.getLogger("uvicorn.error")

FAILURE_STATUS = {
    FailureKind.CONNECT_FAILED: 502,
    FailureKind.PROTOCOL_ERROR: 502,
    FailureKind.TIMEOUT: 504,
    FailureKind.CLIENT_ABORTED: 400,
}

FAILURE_TITLE = {
    502: "Bad gateway",
    504: "Gateway timeout",
    400: "Client aborted the request",
}


def encode_headers(headers: List[Tuple[str, str]]) -> List[Tuple[bytes, bytes]]:
    return [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in headers
    ]


def response_headers(
    upstream_headers: List[Tuple[bytes, bytes]], decision: CorsDecision
) -> List[Tuple[bytes, bytes]]:
    """
    Upstream headers minus hop-by-hop and CORS headers, duplicates kept in
    order, followed by the decision's CORS headers.
    """
    extra_hop = connection_tokens(upstream_headers)
    headers = []
    for name, value in upstream_headers:
        text_name = name.decode("latin-1")
        if is_hop_by_hop(text_name, extra_hop) or is_cors_response_header(text_name):
            continue
        headers.append((name.lower(), value))
    headers.extend(encode_headers(cors_headers(decision)))
    return headers


def preflight_response(decision: CorsDecision) -> Response:
    response = Response(status_code=204)
    response.raw_headers = encode_headers(cors_headers(decision))
    return response


def failure_response(decision: CorsDecision, failure: UpstreamFailure) -> Response:
    status_code = FAILURE_STATUS[failure.kind]
    response = JSONResponse(
        status_code=status_code,
        content={"detail": f"{FAILURE_TITLE[status_code]}: {failure.kind.value}: {failure.detail}"},
    )
    response.raw_headers.extend(encode_headers(cors_headers(decision)))
    return response


async def stream_body(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
    """
    Stream the upstream body chunk by chunk. The upstream response is closed
    however the iteration ends: exhausted, failed, or cancelled because the
    client went away.
    """
    finished = False
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
        finished = True
    except httpx.HTTPError as e:
        finished = True
        # Headers are already on the wire; aborting the connection is the only
        # way left to tell the client the body is truncated
        log_exception_with_details(logger, "[Relay] Upstream body aborted:", e)
        raise
    finally:
        if not finished:
            logger.info("[Relay] Client disconnected, closing upstream response")
        with anyio.CancelScope(shield=True):
            await upstream.aclose()


class UpstreamStreamingResponse(StreamingResponse):
    """Closes the body generator, and with it the upstream, however sending ends."""

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.body_iterator.aclose()


def upstream_response(decision: CorsDecision, upstream: UpstreamResponse) -> Response:
    response = UpstreamStreamingResponse(
        stream_body(upstream), status_code=upstream.status_code
    )
    response.raw_headers = response_headers(upstream.headers, decision)
    return response


def respond(decision: CorsDecision, outcome: Outcome) -> Response:
    """
    Build the one response for a request.

    Args:
        decision: CORS headers for this request
        outcome: PREFLIGHT, or the forwarder's result

    Returns:
        204 for a preflight, the streamed upstream response, or a 502/504
        (400 when the client aborted its upload) carrying CORS headers
    """
    if outcome is PREFLIGHT:
        return preflight_response(decision)
    if isinstance(outcome, UpstreamFailure):
        return failure_response(decision, outcome)
    return upstream_response(decision, outcome)
