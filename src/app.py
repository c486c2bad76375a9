"""
Daemon Wallet - Local Ethereum key custody daemon.

Serves a browser extension over native messaging (stdin/stdout) and local
tools over a Unix socket; every unlock, signature and connect request is
confirmed by a human on the terminal.

Entry point for the daemon.
"""

import asyncio
import os
import sys

from models.config import DaemonConfig, load_config
from services.approval import TerminalApprovalGate
from services.broadcaster import Web3Broadcaster
from services.daemon import DaemonService
from services.logging import configure_logging


def use_native_messaging() -> bool:
    """Native messaging when launched by the browser (stdin is a pipe)."""
    if os.environ.get("DAEMON_MODE") == "background":
        return False
    return not sys.stdin.isatty()


async def run_daemon(config: DaemonConfig) -> None:
    broadcaster = None
    if config.rpc_url:
        broadcaster = Web3Broadcaster(config.rpc_url, config.chain_id)

    daemon = DaemonService(config, TerminalApprovalGate(), broadcaster=broadcaster)
    await daemon.run(native=use_native_messaging())


def main():
    """Daemon entry point."""
    try:
        config = load_config()
    except ValueError as e:
        print(f"daemon-wallet: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # Configure logging before anything else runs
    configure_logging(config.log_level, config.logs_dir, config.log_retention_days)

    try:
        asyncio.run(run_daemon(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
