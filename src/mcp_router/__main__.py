"""
MCP Router - Module Entry Point

Allows running the aggregator as a Python module:
    python -m mcp_router serve --port 3283 -- node ./echo-server.js
"""
import sys

from mcp_router.gateway.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
