#!/usr/bin/env python3
"""
Start the API server with the configured host and port.

Auto-reload stays off: the generated/ directory changes constantly while
sessions run.
"""

import uvicorn

from genstack.utils.config import Config


def main():
    server = Config.load_default().server

    print(f"Starting API server on http://{server.host}:{server.port}")
    print(f"API documentation available at http://{server.host}:{server.port}/docs")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    uvicorn.run(
        "genstack.api.app:app",
        host=server.host,
        port=server.port,
        reload=False,
        log_level=server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
