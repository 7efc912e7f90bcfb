"""CORS relay: a reverse proxy that grants browser origins access to one backend."""

__version__ = "0.1.0"
