import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import psutil

from http_driver import HttpDriverFactory
from journey_errors import ConfigurationError
from journey_runner import RunResult, logger, run_load_test, summarize_samples
from playwright_driver import PlaywrightDriverFactory
from runner_config import LoadTestConfig, load_config
from session_driver import SessionDriverFactory


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the browser journey load test against TARGET_URL")
    parser.add_argument("--config", dest="config_file", default=os.getenv("JOURNEY_RUNNER_CONFIG"), help="YAML config file (${VAR} placeholders are expanded from the environment)")
    parser.add_argument("--target-url", dest="target_url", default=None, help="Target URL of the form https://host/slug (overrides TARGET_URL)")
    parser.add_argument("--vus", dest="vus", type=int, default=None, help="Number of virtual users (overrides VUS)")
    parser.add_argument("--duration", dest="duration", type=int, default=None, help="Run duration in seconds (overrides DURATION)")
    parser.add_argument("--driver", dest="driver", choices=["playwright", "http"], default=None, help="Session driver implementation")
    parser.add_argument("--headed", dest="headed", action="store_true", help="Show browser windows (playwright driver)")
    parser.add_argument("--seed", dest="seed", type=int, default=None, help="Seed for think times, answers and fake user data")
    parser.add_argument("--deadline", dest="deadline_s", type=float, default=None, help="Hard wall-clock cutoff for the run in seconds")
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides = {
        "target_url": args.target_url,
        "vus": args.vus,
        "duration": args.duration,
        "driver": args.driver,
        "seed": args.seed,
        "deadline_s": args.deadline_s,
    }
    if args.headed:
        overrides["headless"] = False
    if args.log_level.upper() == "DEBUG":
        overrides["debug"] = True
    return {k: v for k, v in overrides.items() if v is not None}


def create_driver_factory(cfg: LoadTestConfig) -> SessionDriverFactory:
    if cfg.driver == "http":
        return HttpDriverFactory(max_connections=cfg.vus * 2, timeout_ms=cfg.step_timeout_ms)
    return PlaywrightDriverFactory(headless=cfg.headless)


def process_stats(proc: psutil.Process) -> Dict[str, Any]:
    """
    Resource usage of the load generator itself (a saturated client skews latencies).
    `proc` must have been primed with cpu_percent(interval=None); CPU is reported since then.
    """
    with proc.oneshot():
        mem = proc.memory_info()
        return {
            "cpu_percent": proc.cpu_percent(interval=None),
            "rss_mb": round(mem.rss / (1024 * 1024), 1),
            "threads": proc.num_threads(),
            "system_memory_percent": psutil.virtual_memory().percent,
        }


def log_summary(result: RunResult, report: Dict[str, Any]) -> None:
    logger.info("=" * 60)
    logger.info(
        f"Virtual users: spawned={result.vus_spawned} completed={result.completed_count} "
        f"failed={result.failed_count} (schedule {result.schedule_seconds:.1f}s, run {result.run_seconds:.1f}s)"
    )
    if result.deadline_reached:
        logger.warning("Run was cut short by the deadline; cancelled virtual users are not counted as failed.")
    for name, value in report["counters"].items():
        logger.info(f"  {name}: {value}")
    for name, summary in report["histograms"].items():
        logger.info(
            f"  {name}: n={summary['count']} min={summary['min']:.0f} median={summary['median']:.0f} "
            f"p95={summary['p95']:.0f} p99={summary['p99']:.0f} max={summary['max']:.0f} (ms)"
        )
    for record in result.error_records:
        logger.info(f"  ✗ VU {record.vu_id} at {record.step_at_failure} [{record.kind.value}]: {record.message}")
    logger.info(f"Load generator process: {json.dumps(report.get('process', {}))}")
    logger.info("=" * 60)


async def run_and_report(cfg: LoadTestConfig) -> RunResult:
    factory = create_driver_factory(cfg)
    proc = psutil.Process()
    proc.cpu_percent(interval=None)  # prime; the next call reports usage over the run
    result = await run_load_test(cfg, factory)
    report = {
        "counters": dict(sorted(result.metrics.counters.items())),
        "histograms": {name: summarize_samples(samples) for name, samples in sorted(result.metrics.histograms.items())},
        "process": process_stats(proc),
    }
    log_summary(result, report)
    return result


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        cfg = load_config(config_file=args.config_file, overrides=build_overrides(args))
    except ConfigurationError as e:
        logger.critical(f"ERROR: {e}")
        return 1

    logger.info("Configuring load test:")
    logger.info(f"  Target URL: {cfg.target_url}")
    logger.info(f"  Virtual Users: {cfg.vus}")
    logger.info(f"  Duration: {cfg.duration}s")
    logger.info(f"  Driver: {cfg.driver}")

    try:
        asyncio.run(run_and_report(cfg))
    except KeyboardInterrupt:
        print("Stopping journey runner...")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
