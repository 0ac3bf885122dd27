#!/usr/bin/env python
"""
Command line entry point.

    python -m bundler.main create-and-buy
    python -m bundler.main buy-only --mint <address>
    python -m bundler.main create-atas --mint <address>
    python -m bundler.main distribute
    python -m bundler.main gather
    python -m bundler.main close-tables
    python -m bundler.main close-token-accounts

The instruction SDK is supplied by the operator as BUNDLER_SDK, an import
path "package.module:factory" where factory(config) returns an InstructionSdk.
"""

import argparse
import asyncio
import importlib
import logging
import os
import sys
from typing import List, Optional

from loguru import logger
from solders.keypair import Keypair

from bundler.config import BundlerConfig, load_config
from bundler.solana.errors import BundlerConfigError, BundlerError
from bundler.solana.integration import BundleOrchestrator
from bundler.solana.sdk import InstructionSdk
from bundler.utils.wallet_storage import BundlerWalletStorage


def setup_logging(level: str = "INFO"):
    """Configure structured logging with loguru."""
    logger.remove()  # Remove default handler
    logger.add(
        "logs/bundler_{time}.log",
        rotation="1 day",
        retention="14 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
        serialize=True,  # JSON formatting for structured logs
    )

    # Also send logs to stdout
    logger.add(
        sys.stdout,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

    # Redirect httpx / solana-py logging to loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru."""
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def load_sdk(config: BundlerConfig, path: Optional[str] = None) -> InstructionSdk:
    """
    Import and build the instruction SDK named by BUNDLER_SDK.

    Raises:
        BundlerConfigError: If the path is missing or does not resolve
    """
    path = path or os.environ.get("BUNDLER_SDK")
    if not path or ":" not in path:
        raise BundlerConfigError("BUNDLER_SDK must be set to 'module:factory'")

    module_name, attribute = path.split(":", 1)
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise BundlerConfigError(f"Cannot load instruction SDK {path}: {e}") from e
    return factory(config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bundler", description="Lookup-table backed bundle launcher")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-and-buy", help="create a token and bundle-buy it")
    create.add_argument("--new-mint", action="store_true", help="generate a fresh mint keypair")

    buy = commands.add_parser("buy-only", help="bundle-buy an existing token")
    buy.add_argument("--mint", help="mint address (defaults to MINT_PUBLIC_KEY)")

    atas = commands.add_parser("create-atas", help="pre-create the bundler wallets' token accounts")
    atas.add_argument("--mint", help="mint address (defaults to MINT_PUBLIC_KEY)")

    distribute = commands.add_parser("distribute", help="send SOL from the payer to the bundler wallets")
    distribute.add_argument("--min-sol", type=float)
    distribute.add_argument("--max-sol", type=float)

    commands.add_parser("gather", help="return SOL from the bundler wallets to the payer")
    commands.add_parser("close-tables", help="deactivate and close known lookup tables")
    commands.add_parser("close-token-accounts", help="close the payer's empty token accounts")
    return parser


def _mint_keypair(config: BundlerConfig, new_mint: bool) -> Keypair:
    storage = BundlerWalletStorage(config.wallets_dir, config.wallet_passphrase)
    keypair = None if new_mint else storage.load_mint()
    if keypair is None:
        keypair = Keypair()
        storage.save_mint(keypair)
    return keypair


async def run(args: argparse.Namespace, config: BundlerConfig) -> int:
    orchestrator = BundleOrchestrator(config, load_sdk(config))
    try:
        if args.command == "create-and-buy":
            result = await orchestrator.create_token_and_bundle_buy(_mint_keypair(config, args.new_mint))
            logger.info(f"Bundle result: {result.model_dump_json()}")
            return 0 if result.confirmed else 1
        if args.command == "buy-only":
            result = await orchestrator.bundle_buy_only(args.mint)
            logger.info(f"Bundle result: {result.model_dump_json()}")
            return 0 if result.confirmed else 1
        if args.command == "create-atas":
            result = await orchestrator.create_token_accounts(args.mint)
            logger.info(f"Token account result: {result.model_dump_json()}")
            return 0 if result.confirmed else 1
        if args.command == "distribute":
            result = await orchestrator.distribute(args.min_sol, args.max_sol)
        elif args.command == "gather":
            result = await orchestrator.gather()
        elif args.command == "close-tables":
            result = await orchestrator.close_lookup_tables()
        else:
            result = await orchestrator.close_token_accounts()
        logger.info(f"{args.command} result: {result.model_dump_json()}")
        return 0
    finally:
        await orchestrator.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level)
    logger.info(f"Starting bundler {args.command} on {config.cluster}")
    try:
        return asyncio.run(run(args, config))
    except BundlerError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
