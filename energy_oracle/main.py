#!/usr/bin/env python3
"""Energy Oracle.

Fetches energy/carbon meter readings from multiple independent oracle
providers, computes a weighted consensus with outlier rejection and logs
the result for each project on a fixed period.

Configure via command-line flags or environment variables.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.ConsensusCalculator import AggregatedReading, ConsensusConfig
from .src.OracleManager import OracleManager
from .src.ProviderRegistry import OracleProvider, ProviderRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_providers(provider_str: str | None) -> list[OracleProvider]:
    """Parse comma-separated provider endpoints.

    Format: name1=url1,name2=url2
    Example: meter-a=http://a.local/latest,meter-b=http://b.local/latest

    :param provider_str: Comma-separated provider string.
    :returns: List of enabled providers with default policy.
    :raises ValueError: If an item has no name or no URL.
    """
    if not provider_str:
        return []

    providers = []
    for item in provider_str.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, endpoint = item.partition("=")
        if not sep or not name.strip() or not endpoint.strip():
            raise ValueError(f"Invalid provider '{item}'. Expected name=url")
        providers.append(OracleProvider(name=name.strip(), endpoint=endpoint.strip()))
    return providers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Energy Oracle: multi-source meter reading consensus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One round for two projects against the default providers
  python -m energy_oracle.main --projects solar-1,wind-7 --once

  # Custom providers, relaxed source floor
  python -m energy_oracle.main --projects solar-1 \\
      --providers meter-a=http://a.local/latest,meter-b=http://b.local/latest \\
      --min-sources 2

Environment variables (CLI args take precedence):
  PROJECTS, PROVIDERS, MIN_SOURCES, REQUIRED_CONFIDENCE, OUTLIER_THRESHOLD,
  CONSENSUS_THRESHOLD, FETCH_PERIOD, FETCH_TIMEOUT,
  SWITCHBOARD_ENDPOINT, SWITCHBOARD_BACKUP_ENDPOINT,
  EXTERNAL_ORACLE_1_ENDPOINT, IOT_DIRECT_ENDPOINT
""",
    )

    parser.add_argument(
        "--projects",
        type=str,
        help="Comma-separated project identifiers",
        default=os.environ.get("PROJECTS"),
    )

    parser.add_argument(
        "--providers",
        type=str,
        help="Comma-separated name=url providers (replaces the default set)",
        default=os.environ.get("PROVIDERS"),
    )

    parser.add_argument(
        "--min-sources",
        dest="min_sources",
        type=int,
        help="Minimum readings required to attempt consensus (default: 3)",
        default=int(os.environ.get("MIN_SOURCES") or "3"),
    )

    parser.add_argument(
        "--required-confidence",
        dest="required_confidence",
        type=float,
        help="Minimum mean confidence of valid readings (default: 0.8)",
        default=float(os.environ.get("REQUIRED_CONFIDENCE") or "0.8"),
    )

    parser.add_argument(
        "--outlier-threshold",
        dest="outlier_threshold",
        type=float,
        help="Standard deviations before a reading is an outlier (default: 2.0)",
        default=float(os.environ.get("OUTLIER_THRESHOLD") or "2.0"),
    )

    parser.add_argument(
        "--consensus-threshold",
        dest="consensus_threshold",
        type=float,
        help="Minimum fraction of readings that must survive (default: 0.7)",
        default=float(os.environ.get("CONSENSUS_THRESHOLD") or "0.7"),
    )

    parser.add_argument(
        "--fetch-period",
        dest="fetch_period",
        type=int,
        help="Seconds between consensus rounds (minimum: 1, default: 60)",
        default=int(os.environ.get("FETCH_PERIOD") or "60"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Override every provider's fetch timeout in seconds",
        default=float(os.environ["FETCH_TIMEOUT"]) if os.environ.get("FETCH_TIMEOUT") else None,
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single round per project and exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


def log_result(project_id: str, result: AggregatedReading | None) -> None:
    if result is None:
        logger.warning(f"{project_id}: no consensus (insufficient readings)")
        return

    outliers = f", outliers: {result.outlier_sources}" if result.outlier_sources else ""
    message = (
        f"{project_id}: kwh={result.kwh:.4f} co2={result.co2:.4f} "
        f"confidence={result.confidence:.3f} "
        f"(sources: {result.valid_sources}{outliers})"
    )
    if result.consensus:
        logger.info(f"{message} consensus reached")
    else:
        logger.warning(f"{message} consensus NOT reached, do not act")


async def run_rounds(
    manager: OracleManager,
    projects: list[str],
    fetch_period: int = 60,
    once: bool = False,
) -> None:
    """Run consensus rounds for each project on a fixed period.

    Projects are processed one after another so two rounds for the same
    project never overlap.

    :param manager: Oracle manager to drive.
    :param projects: Project identifiers.
    :param fetch_period: Seconds to sleep between rounds.
    :param once: Stop after the first round.
    """
    try:
        while True:
            for project_id in projects:
                result = await manager.get_aggregated_reading(project_id)
                log_result(project_id, result)

            health = manager.get_health_status()
            logger.info(
                f"Providers: {health['healthy_providers']}/"
                f"{health['enabled_providers']} healthy, "
                f"average reputation {health['average_reputation']:.1f}"
            )
            manager.cleanup_old_readings()

            if once:
                return
            await asyncio.sleep(fetch_period)
    finally:
        await manager.aclose()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Energy Oracle CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.fetch_period < 1:
        parser.error("--fetch-period must be at least 1 second")

    if args.fetch_timeout is not None and args.fetch_timeout <= 0:
        parser.error("--fetch-timeout must be positive")

    projects = [p.strip() for p in (args.projects or "").split(",") if p.strip()]
    if not projects:
        parser.error("At least one project must be specified")

    try:
        config = ConsensusConfig(
            min_sources=args.min_sources,
            required_confidence=args.required_confidence,
            outlier_threshold=args.outlier_threshold,
            consensus_threshold=args.consensus_threshold,
        )
        custom_providers = parse_providers(args.providers)
    except ValueError as e:
        parser.error(str(e))

    if custom_providers:
        registry = ProviderRegistry(custom_providers)
    else:
        registry = ProviderRegistry.with_defaults()

    if args.fetch_timeout is not None:
        for provider in registry.all():
            registry.update(provider.name, timeout=args.fetch_timeout)

    # Log configuration
    logger.info("=" * 60)
    logger.info("Energy Oracle - Multi-Source Consensus")
    logger.info("=" * 60)
    logger.info(f"Projects:            {', '.join(projects)}")
    logger.info(f"Providers:           {', '.join(p.name for p in registry.all())}")
    logger.info(f"Min Sources:         {config.min_sources}")
    logger.info(f"Required Confidence: {config.required_confidence}")
    logger.info(f"Outlier Threshold:   {config.outlier_threshold} std devs")
    logger.info(f"Consensus Threshold: {config.consensus_threshold}")
    logger.info(f"Fetch Period:        {args.fetch_period}s")
    logger.info("=" * 60)

    try:
        manager = OracleManager(registry, config)
        asyncio.run(
            run_rounds(manager, projects, fetch_period=args.fetch_period, once=args.once)
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
