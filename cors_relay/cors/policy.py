"""
CORS decisions for relayed requests.

Every request carrying an ``Origin`` is granted access by reflecting that
origin back with credentials allowed. Preflight requests (``OPTIONS`` with
both ``Origin`` and ``Access-Control-Request-Method``) are answered by the
relay itself and never reach the backend.
"""

from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from cors_relay.config import ProxyConfig

ALLOW_ORIGIN = "Access-Control-Allow-Origin"
ALLOW_CREDENTIALS = "Access-Control-Allow-Credentials"
ALLOW_METHODS = "Access-Control-Allow-Methods"
ALLOW_HEADERS = "Access-Control-Allow-Headers"
MAX_AGE = "Access-Control-Max-Age"

REQUEST_METHOD = "access-control-request-method"
REQUEST_HEADERS = "access-control-request-headers"

CORS_HEADER_PREFIX = "access-control-"
CORS_REQUEST_PREFIX = "access-control-request-"


@dataclass(frozen=True)
class CorsDecision:
    """
    CORS headers to attach to one response.

    Attributes:
        is_preflight: The request must be answered directly with 204
        allow_origin: Origin to reflect; None means attach no CORS headers
        allow_methods: Methods granted on a preflight answer
        allow_headers: Request headers granted on a preflight answer
        allow_credentials: Whether credentialed requests are permitted
        max_age_seconds: Preflight cache duration, only set for preflights
    """

    is_preflight: bool
    allow_origin: Optional[str] = None
    allow_methods: Tuple[str, ...] = ()
    allow_headers: Tuple[str, ...] = ()
    allow_credentials: bool = False
    max_age_seconds: Optional[int] = None


def _split_tokens(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(token.strip() for token in raw.split(",") if token.strip())


def origin_allowed(origin: str, config: ProxyConfig) -> bool:
    """An empty allow-list reflects every origin."""
    if not config.allowed_origins:
        return True
    return origin in config.allowed_origins


def classify(method: str, headers: Mapping[str, str], config: ProxyConfig) -> CorsDecision:
    """
    Decide which CORS headers a request gets and whether it is a preflight.

    ``headers`` must do case-insensitive lookups (Starlette or httpx
    ``Headers``). Never raises.
    """
    origin = headers.get("origin")
    requested_method = headers.get(REQUEST_METHOD)
    is_preflight = (
        method.upper() == "OPTIONS" and origin is not None and requested_method is not None
    )

    if origin is None or not origin_allowed(origin, config):
        return CorsDecision(is_preflight=is_preflight)

    if not is_preflight:
        return CorsDecision(
            is_preflight=False, allow_origin=origin, allow_credentials=True
        )

    allow_methods = _split_tokens(requested_method) or config.default_allow_methods
    # Requested headers are echoed verbatim, only a missing list falls back
    requested_headers = (headers.get(REQUEST_HEADERS) or "").strip()
    allow_headers = (
        (requested_headers,) if requested_headers else config.default_allow_headers
    )
    return CorsDecision(
        is_preflight=True,
        allow_origin=origin,
        allow_methods=allow_methods,
        allow_headers=allow_headers,
        allow_credentials=True,
        max_age_seconds=config.cors_max_age,
    )


def cors_headers(decision: CorsDecision) -> List[Tuple[str, str]]:
    """Render a decision into response header pairs, at most one of each name."""
    if decision.allow_origin is None:
        return []

    headers = [(ALLOW_ORIGIN, decision.allow_origin)]
    if decision.allow_credentials:
        headers.append((ALLOW_CREDENTIALS, "true"))
    if decision.is_preflight:
        headers.append((ALLOW_METHODS, ", ".join(decision.allow_methods)))
        headers.append((ALLOW_HEADERS, ", ".join(decision.allow_headers)))
        if decision.max_age_seconds is not None:
            headers.append((MAX_AGE, str(decision.max_age_seconds)))
    return headers


def is_cors_response_header(name: str) -> bool:
    """``Access-Control-Allow-*``, ``-Expose-Headers`` and ``-Max-Age``, not the request ones."""
    lowered = name.lower()
    return lowered.startswith(CORS_HEADER_PREFIX) and not lowered.startswith(
        CORS_REQUEST_PREFIX
    )
