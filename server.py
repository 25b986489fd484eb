#!/usr/bin/env python3
"""
Main entry point for the Context Sentry MCP Server.

The package is split by concern:
- config.py: Configuration constants
- models.py: Data models (dataclasses)
- memory_system.py: ContextMemorySystem facade wiring stores and engines
- mcp_tools.py: MCP tool handler registration
"""

import asyncio
import atexit
import argparse
import signal
import sys

# Third-party imports
try:
    from fastmcp import FastMCP
except ImportError as e:
    print("Missing required package. Install with: pip install fastmcp")
    print(f"Error: {e}")
    sys.exit(1)

# Local imports
from context_mcp import ContextMemorySystem, DEFAULT_TENANT_ID, register_tools


def main():
    """Main entry point for the MCP server"""

    # Parse command-line arguments
    parser = argparse.ArgumentParser(description="Context Sentry MCP Server")
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
    parser.add_argument(
        "--tenant",
        type=str,
        default=DEFAULT_TENANT_ID,
        help=f"Tenant used when a tool call names none (default: {DEFAULT_TENANT_ID})",
    )

    args = parser.parse_args()

    # Initialize the context system
    context_system = ContextMemorySystem()

    # Setup FastMCP
    mcp = FastMCP("ContextSentry")

    # Register all MCP tools
    register_tools(mcp, context_system, args.tenant)

    # ── Shutdown helpers ────────────────────────────────────────
    _shutting_down = False

    def _graceful_shutdown(signum=None, frame=None):
        """Handle SIGTERM / SIGHUP by closing the context system cleanly.

        Drains pending audit events, checkpoints the WAL and closes the
        SQLite connection before the process exits.
        """
        nonlocal _shutting_down
        if _shutting_down:
            return  # Avoid re-entrancy
        _shutting_down = True

        sig_name = signal.Signals(signum).name if signum else "atexit"
        print(f"\nReceived {sig_name}, shutting down context system...", file=sys.stderr)
        context_system.close()

    # Register cleanup on normal exit (atexit) and OS signals
    atexit.register(_graceful_shutdown)

    # SIGTERM: sent by launchd / systemd / Docker on stop
    signal.signal(signal.SIGTERM, _graceful_shutdown)

    # SIGHUP:  sent when terminal is closed or SSH disconnects
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _graceful_shutdown)

    try:
        if args.transport == "http":
            print(
                f"Starting Context Sentry MCP Server on http://{args.host}:{args.port}{args.path}",
                file=sys.stderr,
            )
            mcp.run(transport="http", host=args.host, port=args.port, path=args.path)
        else:
            # Default: stdio transport
            asyncio.run(mcp.run_stdio_async(show_banner=False))
    except KeyboardInterrupt:
        print("\nShutting down context system...", file=sys.stderr)
        _graceful_shutdown()
    except Exception as e:
        print(f"Error running MCP server: {e}", file=sys.stderr)
        _graceful_shutdown()


if __name__ == "__main__":
    main()
