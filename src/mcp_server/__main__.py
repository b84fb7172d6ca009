"""Run MCP server (stdio or HTTP). Chat sync and messaging tools over the Beeper mirror."""
import asyncio
import logging
import sys

import uvicorn

from mcp_server.server import mcp

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)
logger = logging.getLogger("mcp_server")

HTTP_HOST = "0.0.0.0"
HTTP_PORT = 8003


def main() -> int:
    if len(sys.argv) > 1 and sys.argv[1] == "serve":
        starlette_app = mcp.streamable_http_app()
        config = uvicorn.Config(starlette_app, host=HTTP_HOST, port=HTTP_PORT, log_level="info")
        logger.info("Serving MCP over HTTP on %s:%d", HTTP_HOST, HTTP_PORT)
        asyncio.run(uvicorn.Server(config).serve())
        return 0
    mcp.run(transport="stdio")
    return 0


if __name__ == "__main__":
    sys.exit(main())
