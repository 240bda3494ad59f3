#!/usr/bin/env python3
"""
OData V2 Gateway for MCP.

Exposes SAP OData V2 services (reached directly or through a BTP destination
and the connectivity proxy) as structured query and schema tools.
"""

import argparse
import os
import signal
import sys
import traceback
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from odata_gateway_lib import ODataGatewayBridge, ProfileRegistry
from odata_gateway_lib.connectivity import ODataHttpTransport, connection_provider_from_env
from odata_gateway_lib.constants import DEFAULT_CONNECTIVITY_PROXY_URL, DEFAULT_SERVICES, DEFAULT_SESSION_TTL
from odata_gateway_lib.errors import ConfigurationError

# Load environment variables from .env file
load_dotenv()


def parse_service_args(args: List[str]) -> Dict[str, str]:
    """Parse NAME=PATH entries (also comma-separated) into an ordered mapping."""
    services: Dict[str, str] = {}
    for arg in args:
        for item in arg.split(','):
            item = item.strip()
            if not item:
                continue
            name, sep, path = item.partition('=')
            name, path = name.strip(), path.strip()
            if not sep or not name or not path:
                raise ConfigurationError(f"Invalid service '{item}', expected NAME=PATH")
            services[name] = path
    return services


def parse_http_addr(http_addr: str) -> Tuple[str, int]:
    """host:port, :port or port -> (host, port)."""
    host, sep, port = http_addr.rpartition(':')
    if not sep:
        host, port = "", http_addr
    try:
        return host or "0.0.0.0", int(port)
    except ValueError:
        return host or "0.0.0.0", 8080


def print_trace_info(bridge: ODataGatewayBridge):
    """Print the configured services, profiles and tools, then return."""
    print("=" * 80)
    print("OData Gateway Trace Information")
    print("=" * 80)
    print(f"\nMCP Name: {bridge.mcp.name}")
    print(f"Connection: {bridge.provider.describe() if bridge.provider is not None else 'not configured'}")
    print(f"Profiles file: {bridge.profiles.profiles_file or 'built-in profiles only'}")
    print(f"Session TTL: {bridge.sessions.ttl_seconds}s")
    for name, binding in bridge.services.items():
        print(f"\nService '{name}' ({'configured' if binding.configured else 'NOT configured'})")
        for line in binding.profile.describe().splitlines():
            print(f"   {line}")
        print(f"   Tools: {', '.join(bridge.registered_tools.get(name, []))}")
    print("\nGlobal tool: odata_gateway_info")
    print("=" * 80)


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="OData V2 Gateway for MCP")
    parser.add_argument("--service", action="append", default=[], metavar="NAME=PATH",
                        help="Backend service to expose (repeatable). Default: ODATA_SERVICES env var, "
                             "else the built-in businesspartner and glaccount services")
    parser.add_argument("--profiles", help="Path to a profiles JSON file (overrides ODATA_PROFILES_FILE)")
    parser.add_argument("--name", default="odata-gateway", help="MCP server name")
    parser.add_argument("--session-ttl", type=int, default=DEFAULT_SESSION_TTL,
                        help=f"Seconds after which idle sessions are forgotten (default: {DEFAULT_SESSION_TTL})")
    parser.add_argument("-v", "--verbose", "--debug", dest="verbose", action="store_true",
                        help="Enable verbose output to stderr")
    parser.add_argument("--trace", action="store_true",
                        help="Initialize the gateway, print services and tools, then exit")
    parser.add_argument("--transport", choices=["stdio", "http", "sse"], default="stdio",
                        help="Transport type: 'stdio' (default), 'http' or 'sse'")
    parser.add_argument("--http-addr", default=":8080", help="HTTP server address (used with --transport http/sse)")
    args = parser.parse_args(argv)

    try:
        if args.service:
            services = parse_service_args(args.service)
        elif os.getenv("ODATA_SERVICES"):
            services = parse_service_args([os.getenv("ODATA_SERVICES")])
        else:
            services = dict(DEFAULT_SERVICES)

        profiles = ProfileRegistry(verbose=args.verbose)
        profiles_file = args.profiles or os.getenv("ODATA_PROFILES_FILE")
        profiles.load_from_file(profiles_file)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        print(f"[VERBOSE] Services: {', '.join(f'{n}={p}' for n, p in services.items())}", file=sys.stderr)

    # Handle SIGINT (Ctrl+C) and SIGTERM gracefully
    def signal_handler(sig, frame):
        print(f"\n{signal.Signals(sig).name} received, shutting down server...", file=sys.stderr)
        sys.exit(0)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        provider = connection_provider_from_env(verbose=args.verbose)
        transport = ODataHttpTransport(
            proxy_url=os.getenv("CONNECTIVITY_PROXY_URL") or DEFAULT_CONNECTIVITY_PROXY_URL,
            verbose=args.verbose,
        )
        bridge = ODataGatewayBridge(
            services,
            provider=provider,
            profiles=profiles,
            mcp_name=args.name,
            session_ttl=args.session_ttl,
            transport=transport,
            verbose=args.verbose,
        )

        if args.trace:
            print_trace_info(bridge)
            sys.exit(0)

        if args.transport == "stdio":
            bridge.run()
        else:
            host, port = parse_http_addr(args.http_addr)
            if args.verbose:
                print(f"[VERBOSE] Starting {args.transport} transport on {host}:{port}", file=sys.stderr)
            bridge.run(transport=args.transport, host=host, port=port)
    except Exception as e:
        print(f"\n--- FATAL ERROR ---", file=sys.stderr)
        print(f"An unexpected error occurred during startup or runtime: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        print("-------------------", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
