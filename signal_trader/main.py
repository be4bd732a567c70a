#!/usr/bin/env python3
"""
Signal Trader
Main Entry Point

Usage:
    signal-trader --process-signal signal.json   # Process one signal envelope and exit
    signal-trader --diagnose                     # Full diagnostics for every credential
    signal-trader --monitor                      # Credential health monitor only
    signal-trader --run                          # Run the engine (signals as JSON lines on stdin)
    signal-trader --status                       # Show current status and exit
"""

import asyncio
import argparse
import json
import signal
import sys
import logging

from .core.errors import PersistenceError
from .core.trading_engine import TradingEngine
from .utils.config_loader import ConfigManager
from .utils.logger import setup_logging

logger = logging.getLogger("signal_trader")


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Multi-user signal trading engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  signal-trader --simulated --process-signal examples/long.json
  signal-trader --diagnose
  signal-trader --monitor
  tail -f signals.jsonl | signal-trader --run
        """
    )

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--process-signal",
        metavar="PATH",
        help="Process the signal envelope(s) in a JSON file ('-' for stdin) and exit"
    )
    mode.add_argument(
        "--diagnose",
        action="store_true",
        help="Run full connector diagnostics for every active credential"
    )
    mode.add_argument(
        "--monitor",
        action="store_true",
        help="Run the credential health monitor until interrupted"
    )
    mode.add_argument(
        "--run",
        action="store_true",
        help="Run the engine; reads newline-delimited JSON signals from stdin"
    )
    mode.add_argument(
        "--status",
        action="store_true",
        help="Show engine status and exit"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--simulated",
        action="store_true",
        help="Serve every credential from the simulated exchange (no real orders)"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config, else INFO)"
    )

    return parser.parse_args(argv)


def _load_envelopes(path: str):
    if path == "-":
        data = json.load(sys.stdin)
    else:
        with open(path, "r") as f:
            data = json.load(f)
    return data if isinstance(data, list) else [data]


def _print_json(payload):
    print(json.dumps(payload, indent=2, default=str))


def _install_stop_handlers(stop: asyncio.Event):
    """Graceful shutdown on SIGINT / SIGTERM"""
    loop = asyncio.get_running_loop()

    def handle_signal():
        logger.info("Shutdown signal received")
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle_signal)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: KeyboardInterrupt still reaches main()
            pass


async def process_signals(engine: TradingEngine, path: str) -> int:
    await engine.initialize()
    await engine.sentiment.refresh()
    exit_code = 0
    try:
        for envelope in _load_envelopes(path):
            summary = await engine.process_signal(envelope)
            _print_json(summary.to_dict())
    except PersistenceError as e:
        logger.error(f"Run summary could not be persisted: {e}")
        exit_code = 2
    finally:
        await engine.stop()
    return exit_code


async def diagnose(engine: TradingEngine) -> int:
    await engine.reload_users()
    try:
        reports = await engine.run_diagnostics(full=True)
    finally:
        await engine.stop()

    print("\n" + "=" * 60)
    print("CONNECTOR DIAGNOSTICS")
    print("=" * 60)
    for key, report in reports.items():
        print(f"\n{key.masked()}: {report.status.value} ({report.score:.0f}%)")
        for result in report.results:
            mark = "OK  " if result.success else "FAIL"
            error = f" [{result.error_kind.value}]" if result.error_kind else ""
            print(f"  {mark} {result.category.value:<15} {result.latency_ms:7.1f}ms{error}")
        for issue in report.critical_issues:
            print(f"  ! {issue.code}: {issue.remediation}")
    if not reports:
        print("\nNo active credentials")
    print("\n" + "=" * 60)

    healthy = all(r.healthy for r in reports.values())
    return 0 if healthy else 1


async def monitor(engine: TradingEngine) -> int:
    await engine.reload_users()
    stop = asyncio.Event()
    _install_stop_handlers(stop)
    task = engine.scheduler.tasks["health"]
    task.run_immediately = True
    for name in list(engine.scheduler.tasks):
        if name != "health":
            del engine.scheduler.tasks[name]
    await engine.scheduler.start()
    try:
        await stop.wait()
    finally:
        await engine.stop()
    return 0


async def _read_stdin_lines(engine: TradingEngine, stop: asyncio.Event):
    loop = asyncio.get_running_loop()
    while not stop.is_set():
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            envelope = json.loads(line)
        except ValueError as e:
            logger.warning(f"Ignoring malformed signal line: {e}")
            continue
        summary = await engine.process_signal(envelope)
        _print_json(summary.to_dict())


async def run(engine: TradingEngine) -> int:
    stop = asyncio.Event()
    _install_stop_handlers(stop)
    await engine.start()
    reader = None
    if not sys.stdin.isatty():
        reader = asyncio.create_task(_read_stdin_lines(engine, stop))
    exit_code = 0
    try:
        waiters = [asyncio.create_task(stop.wait())]
        if reader is not None:
            waiters.append(reader)
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if reader is not None and reader in done and reader.exception() is not None:
            raise reader.exception()
        # Keep the periodic tasks alive after stdin closes
        if not stop.is_set():
            await stop.wait()
    except PersistenceError as e:
        logger.error(f"Run summary could not be persisted: {e}")
        exit_code = 2
    finally:
        for waiter in waiters:
            waiter.cancel()
        await engine.stop()
    return exit_code


async def show_status(engine: TradingEngine) -> int:
    await engine.initialize()
    status = engine.get_status()
    await engine.stop()

    print("\n" + "=" * 60)
    print("SIGNAL TRADER STATUS")
    print("=" * 60)
    print(f"\nSimulated: {status['simulated']}")
    print(f"Exchanges: {', '.join(status['exchanges'])}")
    print(f"Users: {status['users']}")

    print("\n--- Credentials ---")
    for cred in status["credentials"]:
        print(f"  {cred['key']}: {cred['status']}{'' if cred['active'] else ' (inactive)'}")

    print("\n--- Market Verdict ---")
    verdict = status["sentiment"]["current"]
    print(f"  {verdict['direction']} ({verdict['confidence']:.2f}) {verdict['reason']}")

    print("\n--- Open Positions ---")
    positions = status["state"]["open_positions"]
    if positions:
        for pos in positions:
            print(f"  {pos['user_id']} {pos['exchange']} {pos['instrument']}: {pos['side']} {pos['size']} @ {pos['entry_price']}")
    else:
        print("  No open positions")

    print("\n" + "=" * 60)
    return 0


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    config = ConfigManager(args.config)
    paths = config.paths
    setup_logging(level=args.log_level or paths.log_level, log_file=paths.log_file)

    try:
        engine = TradingEngine(config=config, simulated=args.simulated)
        if args.process_signal:
            exit_code = asyncio.run(process_signals(engine, args.process_signal))
        elif args.diagnose:
            exit_code = asyncio.run(diagnose(engine))
        elif args.monitor:
            exit_code = asyncio.run(monitor(engine))
        elif args.run:
            exit_code = asyncio.run(run(engine))
        else:
            exit_code = asyncio.run(show_status(engine))
    except KeyboardInterrupt:
        print("\nShutdown requested...")
        exit_code = 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
