from typing import Optional

from starlette.datastructures import Address


def client_host(client: Optional[Address]) -> str:
    """Remote address of the inbound connection, ``unknown`` when the server gives none."""
    return client.host if client else "unknown"
