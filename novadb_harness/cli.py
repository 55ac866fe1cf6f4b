#!/usr/bin/env python3
"""
Command-line entry point for the novadbplus consistency scenarios.

Usage Examples:
    novadb-harness --scenario repl                      # replication catch-up
    novadb-harness --scenario restore --kvstorecount 4  # backup/restore, both modes
    novadb-harness --scenario all --keep-data           # everything, keep node dirs
    novadb-harness --no-startup --master-port 6379 --slave-port 6380 --scenario repl
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config import HarnessConfig, load_config
from .logger import console, setup_logging
from .orchestrator import Orchestrator, print_summary
from .scenarios import SCENARIO_NAMES, build_scenarios

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="novadb-harness",
        description="Run novadbplus replication, restore, distributed-sync and limit scenarios",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --scenario repl                 Replication catch-up with 2 x 100000 keys
  %(prog)s --scenario restore              Backup/restore in copy and ckpt mode
  %(prog)s --scenario all --keep-alive     Run everything, leave the nodes running
        """,
    )

    parser.add_argument("--config", type=Path, help="TOML file with harness settings")
    parser.add_argument("--scenario", action="append", choices=SCENARIO_NAMES + ("all",),
                        help="Scenario to run (repeatable, default: all)")

    # node placement and credentials
    parser.add_argument("--host", help="Address nodes listen on")
    parser.add_argument("--master-port", type=int, help="Preferred master port")
    parser.add_argument("--slave-port", type=int, help="Preferred slave / second node port")
    parser.add_argument("--target-port", type=int, help="Preferred distributed-sync target port")
    parser.add_argument("--auth", help="Node password (requirepass / masterauth)")
    parser.add_argument("--kvstorecount", type=int, help="Stores per node")
    parser.add_argument("--binary", help="Server binary to launch")
    parser.add_argument("--valgrind", action="store_true", default=None,
                        help="Launch nodes under valgrind")

    # workload
    parser.add_argument("--num1", type=int, help="Keys written before binding the replica")
    parser.add_argument("--num2", type=int, help="Keys written while replication runs")
    parser.add_argument("--keyprefix1", help="Prefix of the first batch")
    parser.add_argument("--keyprefix2", help="Prefix of the second batch")

    # lifecycle
    parser.add_argument("--keep-alive", action="store_true", default=None,
                        help="Do not shut nodes down after the run")
    parser.add_argument("--keep-data", action="store_true", default=None,
                        help="Keep node directories after the run")
    parser.add_argument("--no-startup", dest="startup", action="store_false", default=None,
                        help="Attach to already running nodes instead of launching them")
    parser.add_argument("--no-compare", dest="compare", action="store_false", default=None,
                        help="Skip the final dataset comparison of the replication scenario")
    parser.add_argument("--keep-going", action="store_true", default=None,
                        help="Run the remaining scenarios after one fails")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config = load_config(args.config)
    config = config.with_overrides(
        host=args.host,
        password=args.auth,
        kvstore_count=args.kvstorecount,
        binary=args.binary,
        valgrind=args.valgrind,
        keep_alive=args.keep_alive,
        keep_data=args.keep_data,
        startup=args.startup,
        compare=args.compare,
        keep_going=args.keep_going,
    )
    ports = {"master": args.master_port, "slave": args.slave_port, "target": args.target_port}
    workload = {"num1": args.num1, "num2": args.num2,
                "keyprefix1": args.keyprefix1, "keyprefix2": args.keyprefix2}
    return config.with_overrides(
        ports=_replace_set(config.ports, ports),
        workload=_replace_set(config.workload, workload),
    )


def _replace_set(section, values):
    return replace(section, **{k: v for k, v in values.items() if v is not None})


async def run(config: HarnessConfig, names: List[str]) -> bool:
    orchestrator = Orchestrator(config)
    outcomes = await orchestrator.run_all(build_scenarios(names, config))
    print_summary(outcomes)
    return all(outcome.passed for outcome in outcomes)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = config_from_args(args)
    except (OSError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    try:
        passed = asyncio.run(run(config, args.scenario or ["all"]))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️ Interrupted by user[/yellow]")
        return 130

    if passed:
        console.print("[green]✅ ALL SCENARIOS PASSED[/green]")
        return 0
    console.print("[red]❌ SCENARIO FAILURES[/red]")
    return 1


if __name__ == "__main__":
    sys.exit(main())
