import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Sequence
from urllib.parse import unquote

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

from cors_relay.config import ProxyConfig
from cors_relay.cors.policy import classify, cors_headers
from cors_relay.proxy.assembler import encode_headers
from cors_relay.proxy.route import relay_route
from cors_relay.utils.exception_logging import log_exception_with_details
from cors_relay.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")

# Headers httpx would otherwise add to every outbound request
CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")


# ASGI sub-spans emitted once per body chunk; a streamed relay would flood the exporter
CHUNK_EVENT_TYPES = frozenset({"http.response.body", "http.request"})


def is_chunk_span(span: ReadableSpan) -> bool:
    attributes = span.attributes or {}
    return attributes.get("asgi.event.type") in CHUNK_EVENT_TYPES


class FilteringSpanExporter(SpanExporter):
    """Drops per-chunk ASGI spans and hands everything else to the wrapped exporter."""

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if not is_chunk_span(span)]
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def parse_otlp_headers(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse ``OTLP_HEADERS`` given as ``key=value`` pairs separated by commas,
    values percent-decoded. Pairs without ``=`` are skipped.
    """
    headers = {}
    for pair in (raw or "").split(","):
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip().lower()] = unquote(value.strip())
    return headers or None


def configure_tracing(app: FastAPI) -> None:
    """Install a tracer provider, export over OTLP when configured, instrument the app."""
    tracer_provider = trace.get_tracer_provider()
    if not isinstance(tracer_provider, TracerProvider):
        trace.set_tracer_provider(
            TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
        )
        tracer_provider = trace.get_tracer_provider()
        if OTLP_ENDPOINT:
            otlp_exporter = OTLPSpanExporter(
                endpoint=OTLP_ENDPOINT, headers=parse_otlp_headers(OTLP_HEADERS)
            )
            tracer_provider.add_span_processor(
                BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
            )

    FastAPIInstrumentor.instrument_app(app, excluded_urls="")


def create_http_client(
    config: ProxyConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    """
    Pooled client for the backend. It adds no headers of its own beyond
    connection management and never follows redirects.
    """
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.upstream_timeout),
        follow_redirects=False,
        limits=httpx.Limits(max_keepalive_connections=32, keepalive_expiry=90),
        transport=transport,
    )
    for name in CLIENT_DEFAULT_HEADERS:
        del client.headers[name]
    return client


def create_app(
    config: ProxyConfig, http_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    Build the relay application for one configuration.

    Args:
        config: Settings shared read-only by every request
        http_client: Backend client to use instead of creating one; the
            caller keeps ownership of it
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if http_client is not None:
            app.state.http_client = http_client
            yield
            return
        async with create_http_client(config) as client:
            app.state.http_client = client
            yield

    # No docs or schema routes: every path belongs to the backend
    app = FastAPI(
        lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None
    )
    app.state.config = config
    app.state.http_client = http_client

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        log_exception_with_details(
            logger, "[Relay] Unhandled error:", exc, exc_info=True
        )
        response = JSONResponse(
            status_code=500, content={"detail": "Internal relay error"}
        )
        decision = classify(request.method, request.headers, config)
        response.raw_headers.extend(encode_headers(cors_headers(decision)))
        return response

    configure_tracing(app)
    app.router.routes.append(relay_route)
    return app
