"""Main entry point for the buildfarm daemon."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from buildfarm.controller.daemon import DaemonConfig, create_daemon
from buildfarm.utils.logger import setup_logging

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="buildfarm - cost-aware lifecycle controller for a CI server on an elastic GKE pool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with farms from directory
  python -m buildfarm --config-dir /etc/buildfarm/farms

  # Reconcile once in dry-run mode and print status
  python -m buildfarm --config-dir ./farms --once --dry-run

  # Persist cost decisions and status across restarts
  python -m buildfarm --config-dir ./farms --state-dir /var/lib/buildfarm \\
      --status-file /var/lib/buildfarm/status.json

  # Run with local kubeconfig (for development)
  python -m buildfarm --config-dir ./farms --kubeconfig --kube-context gke_acme-ci_europe-west1-b_tools
        """,
    )

    parser.add_argument(
        "--config-dir",
        type=str,
        help="Directory containing BuildFarm YAML files",
    )

    parser.add_argument(
        "--check-interval",
        type=int,
        default=60,
        help="Seconds between reconcile cycles (default: 60)",
    )

    parser.add_argument(
        "--max-workers",
        type=int,
        default=4,
        help="Farms reconciled concurrently (default: 4)",
    )

    parser.add_argument(
        "--state-dir",
        type=str,
        help="Directory for the persisted cost decision log",
    )

    parser.add_argument(
        "--status-file",
        type=str,
        help="JSON file rewritten with farm status after each cycle",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single reconcile cycle, print status and exit",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Enable dry-run mode (observe and log, never mutate resources)",
    )

    parser.add_argument(
        "--kubeconfig",
        action="store_true",
        help="Use local kubeconfig instead of in-cluster config",
    )

    parser.add_argument(
        "--kube-context",
        type=str,
        help="Kubeconfig context to use with --kubeconfig (default: current context)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-format",
        type=str,
        default="text",
        choices=["text", "json"],
        help="Log output format (default: text)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"buildfarm {__version__}",
    )

    return parser.parse_args(argv)


def validate_args(args):
    """
    Validate command-line arguments.

    Args:
        args: Parsed arguments

    Returns:
        True if valid, False otherwise
    """
    if args.check_interval < 1:
        logger.error("Check interval must be at least 1 second")
        return False

    if args.max_workers < 1:
        logger.error("Max workers must be at least 1")
        return False

    if args.config_dir:
        config_path = Path(args.config_dir)
        if not config_path.exists():
            logger.error(f"Config directory does not exist: {args.config_dir}")
            return False
        if not config_path.is_dir():
            logger.error(f"Config path is not a directory: {args.config_dir}")
            return False

    if args.state_dir and Path(args.state_dir).exists() and not Path(args.state_dir).is_dir():
        logger.error(f"State path is not a directory: {args.state_dir}")
        return False

    return True


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(
        level=args.log_level,
        format_type=args.log_format,
    )

    logger.info("=" * 60)
    logger.info("buildfarm - Cost-Aware Build Farm Controller")
    logger.info("=" * 60)

    if not validate_args(args):
        sys.exit(1)

    logger.info("Configuration:")
    logger.info(f"  Config directory: {args.config_dir or '(none)'}")
    logger.info(f"  Check interval: {args.check_interval}s")
    logger.info(f"  Max workers: {args.max_workers}")
    logger.info(f"  State directory: {args.state_dir or '(in-memory)'}")
    logger.info(f"  Status file: {args.status_file or '(none)'}")
    logger.info(f"  Dry-run mode: {args.dry_run}")
    logger.info(f"  Kubernetes config: {'kubeconfig' if args.kubeconfig else 'in-cluster'}")
    logger.info(f"  Log level: {args.log_level}")
    logger.info(f"  Log format: {args.log_format}")

    if args.dry_run:
        logger.warning("DRY-RUN MODE ENABLED - No resources will be created, resized or pushed")

    config = DaemonConfig(
        check_interval=args.check_interval,
        max_workers=args.max_workers,
        dry_run=args.dry_run,
        in_cluster=not args.kubeconfig,
        config_directory=args.config_dir,
        state_dir=args.state_dir,
        status_file=args.status_file,
        kube_context=args.kube_context,
    )

    try:
        logger.info("Initializing buildfarm daemon...")
        daemon = create_daemon(config)

        logger.info("Starting daemon main loop...")
        asyncio.run(daemon.run(once=args.once))

        if args.once:
            print(json.dumps(daemon.statuses(), indent=2, sort_keys=True))

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
