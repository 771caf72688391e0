#!/usr/bin/env python

import argparse
import logging
import sys

from tqdm import tqdm

from readmit.config import ConfigurationError, build_runner, load_rejoin_config
from readmit.ledger import Ledger
from readmit.messages import render

logger = logging.getLogger(__name__)


def print_configuration(config, targets):
    """Print configuration summary."""
    policy = config.policy
    print("\n" + "=" * 70)
    print("  READMIT REJOIN CONFIGURATION")
    print("=" * 70)
    print(f"  Cluster:        {config.cluster_id}")
    print(f"  Members:        {len(config.group.list_members())}")
    print(f"  Targets:        {', '.join(targets) if targets else '(none)'}")
    print(f"  Poll interval:  {policy.poll_interval_ms:.0f} ms")
    print(f"  Max polls:      {policy.max_polls if policy.max_polls is not None else 'unbounded'}")
    print(f"  Deadline:       {f'{policy.deadline_ms:.0f} ms' if policy.deadline_ms is not None else 'none'}")
    print(f"  OFFLINE grace:  {policy.settling_polls} polls")
    if policy.backoff_enabled:
        print(f"  Backoff:        base={policy.backoff_base_ms}ms "
              f"x{policy.backoff_multiplier} max={policy.backoff_max_ms}ms "
              f"jitter={policy.backoff_jitter}")
    if config.options:
        print(f"  Options:        {dict(config.options)}")
    if config.exempt_channels:
        print(f"  Exempt chans:   {', '.join(config.exempt_channels)}")
    print(f"  Seed:           {config.seed if config.seed is not None else 'random'}")
    print("=" * 70 + "\n")


def cli():
    """CLI entry point for the rejoin admission controller."""
    parser = argparse.ArgumentParser(
        description="Validate and rejoin instances to a replicated cluster"
    )
    parser.add_argument(
        "config",
        nargs="?",
        default="cluster.toml",
        help="Path to TOML configuration file (default: cluster.toml)"
    )
    parser.add_argument(
        "instances",
        nargs="*",
        help="Instances to rejoin (default: rejoin.targets, or every OFFLINE member)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all logging except errors"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only validate; do not request the join"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override the configured seed"
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Write one row per attempt to this parquet file"
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar"
    )
    args = parser.parse_args()

    # Setup logging
    if args.quiet:
        logging.basicConfig(level=logging.ERROR, format='%(levelname)s: %(message)s')
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')

    try:
        config = load_rejoin_config(args.config, seed_override=args.seed)
    except ConfigurationError as e:
        print("Configuration validation failed:")
        for error in e.errors:
            print(f"  ✗ {error}")
        sys.exit(2)

    targets = list(dict.fromkeys(args.instances or config.targets))
    if not targets:
        print("No instances to rejoin.")
        sys.exit(0)

    if not args.quiet:
        print_configuration(config, targets)

    ledger = Ledger()
    runner = build_runner(config, ledger=ledger, dry_run=args.dry_run or None)

    show_progress = not args.no_progress and not args.verbose and not args.quiet
    if show_progress:
        with tqdm(total=len(targets), unit='instance', desc="Rejoining") as pbar:
            results = runner.run(targets, on_result=lambda r: pbar.update(1))
    else:
        results = runner.run(targets)

    for result in results:
        print()
        for line in render(result):
            print(line)

    if args.output:
        logger.info(f"Exporting results to {args.output}")
        ledger.export_parquet(args.output)

    if not args.quiet:
        print()
        print(f"Rejoined {ledger.online}/{ledger.total} "
              f"(rejected={ledger.rejected}, timed out={ledger.timed_out})")

    sys.exit(0 if all(r.succeeded for r in results) else 1)


if __name__ == "__main__":
    cli()
