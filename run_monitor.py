#!/usr/bin/env python3
"""
Flash-loan arbitrage monitor CLI.

Polls the configured pairs, evaluates the cross-venue spread and triggers
atomic executions when it pays.

Usage:
    python3 run_monitor.py
    python3 run_monitor.py --config configs/paper.yaml
    python3 run_monitor.py --config configs/paper.yaml --once
"""

import argparse
import asyncio
import logging
import signal
import sys

import logging_config
from dex.factory import Engine, build_engine
from flash_arbitrage.config_loader import load_config
from flash_arbitrage.exceptions import ConfigurationError, FlashArbitrageError
from flash_arbitrage.metrics import ArbitrageMetrics
from flash_arbitrage.version import __version__


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Flash-loan cross-venue arbitrage monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config
  python3 run_monitor.py

  # Single polling cycle (for testing/CI)
  python3 run_monitor.py --config configs/paper.yaml --once

  # Live mode, key read from .env
  python3 run_monitor.py --config configs/live.yaml --env-file .env
        """,
    )

    parser.add_argument(
        "--config",
        default="configs/paper.yaml",
        help="Path to config YAML file (default: configs/paper.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single polling cycle and exit",
    )
    parser.add_argument(
        "--ticks",
        type=int,
        default=None,
        help="Stop after this many polling cycles",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="dotenv file with secrets (default: .env lookup)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser.parse_args(argv)


async def run(engine: Engine, max_ticks=None) -> None:
    monitor = engine.monitor
    metrics = monitor.metrics

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.stop)
        except (NotImplementedError, RuntimeError):
            pass

    if metrics and engine.config.metrics_port:
        await metrics.start_server(port=engine.config.metrics_port)

    try:
        await monitor.run(max_ticks=max_ticks)
    finally:
        if metrics and engine.config.metrics_port:
            await metrics.stop_server()
        await engine.close()

    print(monitor.summary())


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    logging_config.setup(getattr(logging, args.log_level))

    try:
        config = load_config(args.config, env_file=args.env_file)
    except ConfigurationError as e:
        print(f"❌ Config error: {e}", file=sys.stderr)
        for err in e.details.get("errors", []):
            loc = ".".join(str(p) for p in err.get("loc", ()))
            print(f"   {loc}: {err.get('msg')}", file=sys.stderr)
        return 1

    try:
        metrics = ArbitrageMetrics() if config.metrics_port else None
        engine = build_engine(config, metrics=metrics)
    except FlashArbitrageError as e:
        print(f"❌ Initialization failed: {e}", file=sys.stderr)
        return 1

    max_ticks = 1 if args.once else args.ticks
    try:
        asyncio.run(run(engine, max_ticks=max_ticks))
    except KeyboardInterrupt:
        print("\n\n⏸ Stopped by user")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
