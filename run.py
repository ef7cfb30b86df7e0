#!/usr/bin/env python3
"""
Yield Safe Keeper startup script

Checks the configuration, then serves the keeper (monitoring loop plus the
/health and /status probes) under uvicorn.

Usage:
    python run.py [--port PORT] [--host HOST] [--log-level LEVEL] [--check]

Settings come from the environment or .env; MONGODB_URI is required.
"""

import argparse
import sys

import structlog
import uvicorn

from keeper.config import settings

logger = structlog.get_logger()

def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Yield Safe Keeper - impermanent-loss protection for liquidity vaults"
    )
    parser.add_argument("--port", "-p", type=int, default=settings.KEEPER_PORT,
                        help=f"Port for the probes (default: {settings.KEEPER_PORT})")
    parser.add_argument("--host", "-H", default="0.0.0.0",
                        help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--log-level", "-l", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        default=settings.LOG_LEVEL.upper(),
                        help=f"Log level (default: {settings.LOG_LEVEL})")
    parser.add_argument("--check", action="store_true",
                        help="Validate configuration and exit")
    return parser.parse_args(argv)

def configuration_problems():
    """Settings combinations the keeper cannot run with"""
    problems = []
    if settings.REGISTRY_BACKEND == "mongo" and not settings.MONGODB_URI.startswith("mongodb"):
        problems.append("MONGODB_URI must be a mongodb:// or mongodb+srv:// URI")
    if settings.SETTLEMENT_MODE == "http" and not settings.SETTLEMENT_URL:
        problems.append("SETTLEMENT_MODE=http requires SETTLEMENT_URL")
    if settings.VAULT_CONTRACT_ADDRESS and not settings.BLOCKFROST_PROJECT_ID:
        problems.append("VAULT_CONTRACT_ADDRESS is set but BLOCKFROST_PROJECT_ID is missing")
    return problems

def main(argv=None):
    args = parse_arguments(argv)

    problems = configuration_problems()
    if problems:
        print("Configuration check failed:")
        for problem in problems:
            print(f"   - {problem}")
        sys.exit(1)
    if args.check:
        print("Configuration OK")
        return

    if settings.SETTLEMENT_MODE == "simulated":
        logger.warning("Settlement is simulated, remediations never reach the ledger")

    logger.info("Starting Yield Safe Keeper", host=args.host, port=args.port, env=settings.ENV)
    # One process only: a second worker would run a second monitoring loop
    uvicorn.run(
        "keeper.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        workers=1,
    )

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nYield Safe Keeper stopped by user")
