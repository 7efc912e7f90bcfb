import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "cors-relay")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

DEFAULT_BIND_ADDR = "127.0.0.1:8000"
DEFAULT_BACKEND_URL = "https://vps.kodub.com"
DEFAULT_CERT_PATH = "cert.pem"
DEFAULT_KEY_PATH = "key.pem"
DEFAULT_LOG_LEVEL = "info"

DEFAULT_PROXY_TIMEOUT = "30"
DEFAULT_IDLE_TIMEOUT = "60"
DEFAULT_SHUTDOWN_GRACE = "30"

# Preflight answers are cached by browsers for a day
DEFAULT_CORS_MAX_AGE = "86400"
DEFAULT_CORS_METHODS = "GET, POST, PUT, PATCH, DELETE, HEAD, OPTIONS"
DEFAULT_CORS_HEADERS = "Content-Type, Authorization"
