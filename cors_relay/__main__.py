import asyncio
import logging
import sys

from cors_relay.config import ProxyConfig
from cors_relay.errors import StartupError
from cors_relay.listener import serve

logger = logging.getLogger("uvicorn.error")


def main() -> int:
    try:
        config = ProxyConfig.from_env()
        asyncio.run(serve(config))
    except StartupError as e:
        logging.basicConfig(format="%(levelname)s:     %(message)s")
        logger.error(f"Startup failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
