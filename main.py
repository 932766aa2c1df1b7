#!/usr/bin/env python3
"""
ezrpc - Main Driver

This is the main entry point for serving a function tree over HTTP and for
calling a running server from the command line.

Usage Examples:
    # Serve the sample functions on port 4321
    python main.py --mode server --port 4321

    # Serve your own functions (the file must define `interface`)
    python main.py --mode server --functions my_api.py

    # Interactive client
    python main.py --mode client --target 127.0.0.1:4321
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict

from ezrpc.config import config
from ezrpc.core import CallContext, FUNCTION_MARKER, load_tree_from_file
from ezrpc.communication import RPCServer, RPCClient, RPCError, RemoteCallError

DEFAULT_FUNCTIONS_FILE = os.path.join(os.path.dirname(__file__), "examples", "sample_functions.py")


def log_call(context: CallContext) -> None:
    """After-hook that logs the outcome of every call."""
    logger = logging.getLogger("ezrpc.calls")
    if context.error is not None:
        logger.warning(f"{context.endpoint.display_name} failed: {context.error}")
    else:
        logger.info(f"{context.endpoint.display_name} ok in {context.execution_time_ms:.1f}ms")


class RuntimeDriver:
    """Main driver for the RPC server and client."""

    def __init__(self, log_level: str = None):
        """Initialize the driver."""
        self.logger = self._setup_logging(log_level or config.logging.level)
        self.shutdown_event = threading.Event()
        self.components = []  # Track all started components for cleanup

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _setup_logging(self, level: str) -> logging.Logger:
        """Setup logging configuration."""
        handlers = []
        if config.logging.enable_console_logging:
            handlers.append(logging.StreamHandler())
        if config.logging.enable_file_logging:
            Path(config.logging.log_file_path).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(config.logging.log_file_path))

        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format=config.logging.format,
            handlers=handlers or None
        )
        return logging.getLogger(__name__)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown_event.set()

    def mode_server(self, args) -> None:
        """Serve a function tree until shutdown."""
        tree = load_tree_from_file(args.functions)

        server = RPCServer(
            interface=tree,
            port=args.port,
            host=args.host,
            after_each_call=[log_call],
            verbosity=args.verbosity
        )
        if not server.start():
            self.logger.error("Failed to start RPC server")
            return

        self.components.append(server)

        print(f"✅ Serving {args.functions}")
        print(f"📡 RPC Server: {server.get_endpoint_url()}")
        print(f"🔧 Endpoints: {', '.join(sorted(server.routes)) or '(none)'}")
        print("Press Ctrl+C to stop gracefully...")

        while not self.shutdown_event.is_set():
            self.shutdown_event.wait(1)
        self._cleanup()

    def mode_client(self, args) -> None:
        """Call a running server interactively."""
        target = args.target if "://" in args.target else f"http://{args.target}"
        client = RPCClient(target)

        print(f"🖥️  Starting CLIENT MODE - Target: {target}")
        print("=" * 60)

        try:
            discovery = client.get_interface()
        except RPCError as e:
            print(f"❌ Cannot connect to {target}: {e}")
            return

        functions = self._list_functions(discovery["interface"])
        print(f"✅ Connected (interface id {discovery['info']['id']})")
        print(f"📋 Available functions: {', '.join(functions)}")

        print("\nAvailable commands:")
        print("  • 'list' - Show available functions")
        print("  • 'call <name> <json args>' - Call a function, e.g. call math.add [2, 3]")
        print("  • 'stats' - Show client statistics")
        print("  • 'quit' - Exit")

        while not self.shutdown_event.is_set():
            try:
                command = input("\n> ").strip()
            except (EOFError, KeyboardInterrupt):
                break

            if command in ('quit', 'exit'):
                break
            elif command == 'list':
                discovery = client.get_interface()
                functions = self._list_functions(discovery["interface"])
                print(f"Available functions: {', '.join(functions)}")
            elif command == 'stats':
                print(json.dumps(client.get_stats(), indent=2))
            elif command.startswith('call '):
                name, _, raw_args = command[5:].strip().partition(' ')
                self._run_call(client, name, raw_args)
            elif command:
                print("❌ Unknown command. Type 'quit' to exit.")

        print("\n👋 Client session ended")

    def _run_call(self, client: RPCClient, name: str, raw_args: str) -> None:
        try:
            call_args = json.loads(raw_args) if raw_args else None
        except json.JSONDecodeError as e:
            print(f"❌ Arguments must be JSON: {e}")
            return

        try:
            print(f"✅ {client.call(name, call_args)}")
        except RemoteCallError as e:
            print(f"❌ {e.endpoint} raised {e.name or 'an error'}: {e}")
        except RPCError as e:
            print(f"❌ Request failed: {e}")

    @staticmethod
    def _list_functions(description: Dict[str, Any]) -> list:
        """Flatten a discovery description into dotted function names."""
        names = []
        for name, node in description.items():
            if isinstance(node, dict):
                names.extend(f"{name}.{child}" for child in RuntimeDriver._list_functions(node))
            elif node == FUNCTION_MARKER:
                names.append(name)
        return names

    def _cleanup(self):
        """Cleanup all components."""
        print("\n🧹 Cleaning up components...")

        for component in reversed(self.components):  # Cleanup in reverse order
            try:
                if hasattr(component, 'stop'):
                    component.stop()
                    print(f"   ✅ Stopped {component.__class__.__name__}")
            except Exception as e:
                print(f"   ⚠️  Error stopping {component.__class__.__name__}: {e}")

        self.components.clear()
        print("✅ Cleanup completed")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Expose a tree of Python functions over HTTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --mode server --port 4321
  %(prog)s --mode server --functions my_api.py --host 127.0.0.1
  %(prog)s --mode client --target 127.0.0.1:4321
        """
    )

    parser.add_argument(
        '--mode',
        required=True,
        choices=['server', 'client'],
        help='Operational mode'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=config.network.default_port,
        help=f'Port to bind server (default: {config.network.default_port})'
    )

    parser.add_argument(
        '--host',
        default=config.network.default_host,
        help=f'Address to bind server (default: {config.network.default_host})'
    )

    parser.add_argument(
        '--functions',
        default=DEFAULT_FUNCTIONS_FILE,
        help='Python file defining `interface` (default: examples/sample_functions.py)'
    )

    parser.add_argument(
        '--target',
        help='Server for client mode (host:port or URL)'
    )

    parser.add_argument(
        '--verbosity',
        type=int,
        default=config.rpc.verbosity,
        help='0 hides startup and registration lines'
    )

    parser.add_argument(
        '--log-level',
        default=None,
        help=f'Logging level (default: {config.logging.level})'
    )

    args = parser.parse_args()

    # Validate arguments
    if args.mode == 'client' and not args.target:
        parser.error("Client mode requires --target argument")

    # Create and run driver
    driver = RuntimeDriver(args.log_level)

    try:
        if args.mode == 'server':
            driver.mode_server(args)
        elif args.mode == 'client':
            driver.mode_client(args)

    except KeyboardInterrupt:
        print("\n👋 Shutdown requested by user")
    except Exception as e:
        print(f"❌ Fatal error: {e}")
        logging.exception("Fatal error occurred")
        sys.exit(1)


if __name__ == "__main__":
    main()
