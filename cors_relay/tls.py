import logging
import ssl
from pathlib import Path

from cors_relay.errors import StartupError

logger = logging.getLogger("uvicorn.error")

# The HTTP/1.1 server stack is the only protocol offered over ALPN
ALPN_PROTOCOLS = ["http/1.1"]


def load_tls_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    """
    Build the server-side TLS context from a PEM certificate chain and key.

    Raises:
        StartupError: When either file is missing or the material is unusable
    """
    logger.info(f"Loading TLS certificate from {cert_path}")
    logger.info(f"Loading TLS private key from {key_path}")

    for label, path in (("cert", cert_path), ("key", key_path)):
        if not Path(path).is_file():
            raise StartupError(f"Failed to open {label} file {path}: no such file")

    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    except (ssl.SSLError, OSError) as e:
        raise StartupError(f"Failed to build TLS config: {e}") from e
    context.set_alpn_protocols(ALPN_PROTOCOLS)

    logger.info("TLS configuration loaded successfully")
    return context
