"""Command line interface for the PulseChain wallet tracker.

Usage:
    python -m pulsechain_wallet_tracker balances 0xWALLET
    python -m pulsechain_wallet_tracker watch 0xWALLET [0xWALLET ...]
    python -m pulsechain_wallet_tracker --verbose watch 0xWALLET
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from pulsechain_wallet_tracker.cache.models import BalanceUpdated
from pulsechain_wallet_tracker.chain.transfers import normalize_address
from pulsechain_wallet_tracker.config import Settings, get_settings
from pulsechain_wallet_tracker.service import BalanceTrackingService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _wallet(value: str) -> str:
    try:
        return normalize_address(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulsechain-wallet-tracker",
        description="Cached, live-updating PulseChain wallet balances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pulsechain-wallet-tracker balances 0xabc...
  pulsechain-wallet-tracker watch 0xabc... 0xdef...
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging (overrides LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    balances = subparsers.add_parser("balances", help="Print current balances of a wallet as JSON")
    balances.add_argument("wallet", type=_wallet, help="Wallet address (0x...)")

    watch = subparsers.add_parser("watch", help="Track wallets and log every balance change")
    watch.add_argument("wallets", type=_wallet, nargs="+", help="Wallet addresses (0x...)")

    return parser


def configure_logging(settings: Settings, *, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else settings.get_logging_level()
    logging.basicConfig(level=level, format=LOG_FORMAT)


async def run_balances(settings: Settings, wallet: str) -> None:
    async with BalanceTrackingService(settings) as service:
        balances = await service.manager.get_balances_with_live_updates(wallet)
    print(json.dumps([balance.to_dict() for balance in balances], indent=2))


def _log_update(update: BalanceUpdated) -> None:
    logger.info(
        "%s %s -> %s (%s)%s",
        update.wallet,
        update.token,
        format(update.formatted_balance, "f"),
        update.balance,
        " [reconciliation]" if update.source else "",
    )


async def run_watch(settings: Settings, wallets: Sequence[str]) -> None:
    async with BalanceTrackingService(settings) as service:
        manager = service.manager
        manager.on_balance_updated.subscribe(_log_update)

        for wallet in wallets:
            balances = await manager.get_balances_with_live_updates(wallet)
            logger.info("Tracking %s with %d balances", wallet, len(balances))

        # Runs until interrupted or the watcher gives up reconnecting.
        await service.watcher.wait_closed()
        logger.error("Transfer watcher stopped; exiting")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(settings, verbose=args.verbose)
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        if args.command == "balances":
            asyncio.run(run_balances(settings, args.wallet))
        else:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(run_watch(settings, args.wallets))
    except Exception as e:
        logger.error("Command %s failed: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
