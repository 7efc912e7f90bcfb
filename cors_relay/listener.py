"""
Connection listener: binds the relay address, terminates TLS when enabled and
serves HTTP/1.1 with keep-alive through uvicorn, one asyncio task per
connection.
"""

import logging
import socket
import ssl
from typing import Optional

import uvicorn

from cors_relay.config import ProxyConfig
from cors_relay.errors import StartupError
from cors_relay.server import create_app
from cors_relay.tls import load_tls_context

logger = logging.getLogger("uvicorn.error")


def bind_listener(config: ProxyConfig) -> socket.socket:
    """
    Bind the listening socket before anything else starts.

    Raises:
        StartupError: When the address is in use, not permitted or invalid
    """
    try:
        family = socket.getaddrinfo(
            config.bind_host, config.bind_port, type=socket.SOCK_STREAM
        )[0][0]
        sock = socket.create_server(
            (config.bind_host, config.bind_port), family=family
        )
    except OSError as e:
        raise StartupError(f"Failed to bind {config.bind_addr}: {e}") from e
    sock.set_inheritable(True)
    return sock


def build_server(
    config: ProxyConfig, ssl_context: Optional[ssl.SSLContext] = None
) -> uvicorn.Server:
    """
    uvicorn server for the relay app. The server adds no ``Server`` or
    ``Date`` header of its own, so the backend's values pass through once.
    """
    server_config = uvicorn.Config(
        create_app(config),
        http="h11",
        lifespan="on",
        log_level=config.log_level,
        timeout_keep_alive=int(config.idle_timeout),
        timeout_graceful_shutdown=int(config.shutdown_grace),
        proxy_headers=False,
        server_header=False,
        date_header=False,
    )
    server_config.load()
    # Hand uvicorn the ready context instead of letting it read files again
    server_config.ssl = ssl_context
    return uvicorn.Server(server_config)


async def serve(config: ProxyConfig) -> None:
    """
    Run the relay until SIGINT/SIGTERM. In-flight requests get the
    configured grace period before connections are closed.

    Raises:
        StartupError: Invalid TLS material or bind failure
    """
    # Building the server configures uvicorn logging, so do it before logging
    server = build_server(config)
    logger.info("Starting reverse proxy server")
    logger.info(f"Backend URL: {config.backend_url}")
    logger.info(f"Bind address: {config.bind_addr}")
    logger.info(f"TLS enabled: {config.use_tls}")

    if config.use_tls:
        server.config.ssl = load_tls_context(config.cert_path, config.key_path)
    else:
        logger.warning("Running in plaintext HTTP mode (TLS disabled)")

    sock = bind_listener(config)
    logger.info(f"Server listening on {config.public_url}")
    try:
        await server.serve(sockets=[sock])
    finally:
        sock.close()
    logger.info("Server shutdown complete")
