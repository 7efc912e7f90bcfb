from typing import Callable, List, Optional, Tuple

import httpx


def upstream_reply(
    status_code: int = 200,
    body: bytes = b"",
    headers: Optional[List[Tuple[str, str]]] = None,
) -> httpx.Response:
    """
    Backend response with an unread stream, the way a real transport hands
    it over (``content=`` would pre-read the body).
    """
    headers = list(headers or [])
    if not any(name.lower() == "content-length" for name, _ in headers):
        headers.append(("content-length", str(len(body))))
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


class ChunkStream(httpx.AsyncByteStream):
    """Async body stream yielding fixed chunks and remembering whether it was closed."""

    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class RecordingBackend:
    """MockTransport handler that records every request it receives."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self.reply: Callable[[httpx.Request], httpx.Response] = (
            lambda request: upstream_reply(200, b"ok")
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(await request.aread())
        self.requests.append(request)
        return self.reply(request)
