import logging

import httpx
from fastapi import Request
from fastapi.responses import Response
from opentelemetry import trace
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from cors_relay.config import ProxyConfig
from cors_relay.cors.policy import classify
from cors_relay.proxy.assembler import PREFLIGHT, respond
from cors_relay.proxy.forwarder import UpstreamFailure, forward, request_target
from cors_relay.utils import client_host
from cors_relay.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")


async def relay_request(request: Request) -> Response:
    """
    Relay one request: answer preflights directly, forward everything else
    to the backend and hand the result to the response assembler.
    """
    config: ProxyConfig = request.app.state.config
    client: httpx.AsyncClient = request.app.state.http_client

    decision = classify(request.method, request.headers, config)
    target_url, target = request_target(config, request)
    origin = request.headers.get("origin")

    with traced_request(
        tracer,
        "relay_request",
        request.method,
        origin,
        f"[Relay] {request.method} {target_url} from {client_host(request.client)}",
        extra_attrs={
            "proxy.target_url": target_url,
            "cors.preflight": decision.is_preflight,
        },
    ) as span:
        if decision.is_preflight:
            logger.debug(
                f"[Relay] Answered preflight for {origin} "
                f"({request.headers.get('access-control-request-method')} {request.url.path})"
            )
            span.set_attribute("proxy.status_code", 204)
            return respond(decision, PREFLIGHT)

        outcome = await forward(client, config, request, target_url, target)

        if isinstance(outcome, UpstreamFailure):
            span.set_attribute("proxy.error", outcome.kind.value)
            logger.error(
                f"[Relay] Proxy error for {request.method} {target_url}: "
                f"{outcome.kind.value}: {outcome.detail}"
            )
        else:
            span.set_attribute("proxy.status_code", outcome.status_code)
            logger.info(
                f"[Relay] Proxy response: {outcome.status_code} for {request.method} {target_url}"
            )
        return respond(decision, outcome)


class RelayEndpoint:
    """
    ASGI endpoint behind the catch-all route. Starlette restricts methods
    only for function endpoints, so this one is matched for any verb
    (TRACE, WebDAV and extension methods included).
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = await relay_request(Request(scope, receive))
        await response(scope, receive, send)


# Catch-all: every path and method belongs to the backend
relay_route = Route("/{path:path}", RelayEndpoint(), methods=None, name="relay")
