import argparse
import asyncio
import logging
import sys

from journey_loader import load_journey_definition, load_run_config, parse_run_config
from journey_runner import ConfigurationError, JourneyDefinition, JourneyRunner, RunConfig, RunSummary


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a customer journey load test locally")
    parser.add_argument("journey_file", help="Path to journey definition (JSON or YAML)")
    parser.add_argument("target_url", nargs="?", default=None, help="Base URL of the journey-simulation service (default http://localhost:8080)")
    parser.add_argument("virtual_users", nargs="?", type=int, default=None, help="Number of concurrent virtual users (default 1)")
    parser.add_argument("debug_level", nargs="?", default=None, help="Logging level (DEBUG, INFO, WARNING; default INFO)")
    parser.add_argument(
        "--config",
        dest="config_file",
        default=None,
        help="Optional run configuration file (JSON or YAML); command-line values override it",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Journey iterations per virtual user (default 1)",
    )
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Repeat journeys until interrupted, a stop flag appears or --duration-s elapses",
    )
    parser.add_argument(
        "--duration-s",
        dest="duration_s",
        type=float,
        default=None,
        help="Stop the run after this many seconds",
    )
    parser.add_argument(
        "--interval-ms",
        dest="interval_ms",
        type=int,
        default=None,
        help="Pause between iterations of one virtual user in milliseconds",
    )
    parser.add_argument(
        "--think-time-scale",
        dest="think_time_scale",
        type=float,
        default=None,
        help="Multiplier applied to every step's think time (0 disables think time)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Run seed for reproducible customer profile assignment",
    )
    parser.add_argument(
        "--stop-flag",
        dest="stop_flags",
        action="append",
        default=None,
        help="Path of a file whose existence stops the run (repeatable)",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RunConfig:
    overrides = {
        "target_url": args.target_url,
        "virtual_users": args.virtual_users,
        "iterations": args.iterations,
        "duration_s": args.duration_s,
        "journey_interval_ms": args.interval_ms,
        "think_time_scale": args.think_time_scale,
        "run_seed": args.seed,
        "stop_flag_paths": args.stop_flags,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.debug_level is not None:
        overrides["debug"] = args.debug_level.upper() == "DEBUG"
    if args.continuous:
        overrides["iterations"] = None

    if args.config_file:
        return load_run_config(args.config_file, overrides)
    # Without a config file the positionals fall back to their documented defaults
    overrides.setdefault("target_url", "http://localhost:8080")
    overrides.setdefault("virtual_users", 1)
    return parse_run_config(overrides)


async def run_journey(cfg: RunConfig, journey: JourneyDefinition) -> RunSummary:
    runner = JourneyRunner(cfg, journey)
    try:
        return await runner.run()
    finally:
        await runner.stop()


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, (args.debug_level or "INFO").upper(), logging.INFO))

    try:
        journey = load_journey_definition(args.journey_file)
        cfg = build_config(args)
    except ConfigurationError as e:
        logging.getLogger("journey_runner_direct_invoker").critical(f"Configuration error: {e}")
        return 2

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(run_journey(cfg, journey))
    try:
        summary = loop.run_until_complete(main_task)
    except KeyboardInterrupt:
        print("Stopping JourneyRunner...")
        main_task.cancel()
        try:
            loop.run_until_complete(main_task)
        except asyncio.CancelledError:
            pass
        return 130
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    return 0 if summary.journeys.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
