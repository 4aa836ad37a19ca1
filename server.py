#!/usr/bin/env python3
"""
Main entry point for the MCP Hub server.

The hub is split into modules with separate concerns:
- config.py: Configuration constants and HubConfig
- store.py / memory_store.py / sqlite_store.py: Store backends
- resilience.py: Circuit breakers, bulkheads and deadlines
- dispatcher.py: Resilience-aware tool dispatch
- mcp_tools.py: MCP tool registration and management routes
"""

import asyncio
import atexit
import argparse
import logging
import signal
import sys
from logging.handlers import TimedRotatingFileHandler

# Third-party imports
try:
    from fastmcp import FastMCP
except ImportError as e:
    print("Missing required package. Install with: pip install fastmcp", file=sys.stderr)
    print(f"Error: {e}", file=sys.stderr)
    sys.exit(1)

# Local imports
from hub_mcp import (
    SERVER_NAME,
    Dispatcher,
    HubConfig,
    ResilienceRegistry,
    build_registry,
    create_store,
    register_routes,
    register_tools,
)


def _setup_logging(config: HubConfig):
    """Daily-rotated INFO log under the data folder; WARNING+ to stderr."""
    config.data_folder.mkdir(parents=True, exist_ok=True)
    log_file = config.data_folder / "hub.log"

    # Daily rotation, keep 30 days
    file_handler = TimedRotatingFileHandler(
        log_file, when="midnight", interval=1, backupCount=30, utc=False
    )
    file_handler.setLevel(logging.INFO)

    # stdout carries the stdio transport, so the console handler uses stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)

    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[file_handler, console_handler],
    )


def main():
    """Main entry point for the MCP server"""

    parser = argparse.ArgumentParser(description="MCP Hub Server")
    parser.add_argument(
        "--transport",
        type=str,
        choices=["stdio", "http"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host address for HTTP transport (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for HTTP transport (default: 8000)",
    )
    parser.add_argument(
        "--path",
        type=str,
        default="/mcp/",
        help="URL path for HTTP transport (default: /mcp/)",
    )

    args = parser.parse_args()

    config = HubConfig.from_env()
    _setup_logging(config)
    logger = logging.getLogger("mcp_hub")

    try:
        store = create_store(config)
    except Exception as e:
        logger.error("Failed to initialize store: %s", e)
        raise

    dispatcher = Dispatcher(build_registry(), ResilienceRegistry(), store, config)

    # Setup FastMCP
    mcp = FastMCP(SERVER_NAME)
    register_tools(mcp, dispatcher)
    register_routes(mcp, dispatcher, config.api_key)

    # ── Shutdown helpers ────────────────────────────────────────
    _shutting_down = False

    def _graceful_shutdown(signum=None, frame=None):
        """Handle SIGTERM / SIGHUP by stopping connector pools and closing the store.

        For the SQLite backend this checkpoints the WAL and closes the
        connection before the process exits.
        """
        nonlocal _shutting_down
        if _shutting_down:
            return
        _shutting_down = True

        sig_name = signal.Signals(signum).name if signum else "atexit"
        logger.info("Received %s, shutting down hub", sig_name)
        dispatcher.resilience.shutdown()
        store.close()

    atexit.register(_graceful_shutdown)

    # SIGTERM: sent by launchd / systemd / Docker on stop
    signal.signal(signal.SIGTERM, _graceful_shutdown)

    # SIGHUP:  sent when terminal is closed or SSH disconnects
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _graceful_shutdown)

    try:
        if args.transport == "http":
            print(
                f"Starting MCP Hub on http://{args.host}:{args.port}{args.path}",
                file=sys.stderr,
            )
            asyncio.run(
                mcp.run_async(
                    transport="http", host=args.host, port=args.port, path=args.path
                )
            )
        else:
            # Default: stdio transport
            asyncio.run(mcp.run_stdio_async(show_banner=False))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down hub")
        _graceful_shutdown()
    except Exception as e:
        logger.error("Error running MCP server: %s", e)
        _graceful_shutdown()
        raise


if __name__ == "__main__":
    main()
