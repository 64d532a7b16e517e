#!/usr/bin/env python3
"""
Web Traffic - synthetic HTTP browsing sessions on a simulated network

Usage - one server, five clients, ten minutes of virtual time:
    python3 -m webtraffic --clients 5 --duration 600 --seed 7

Usage - experiment file:
    python3 -m webtraffic --config experiment.yaml --log-level DEBUG
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from .config import ExperimentConfig
from .errors import WebTrafficError
from .experiment import Experiment

logger = logging.getLogger("HTTP.Main")


def setup_logging(log_level: str = "INFO"):
    """
    Setup logging configuration

    Args:
        log_level: Logging level
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webtraffic",
        description="Synthetic HTTP browsing traffic on a simulated reliable network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:

  # Single client against a single server, defaults everywhere:
  python3 -m webtraffic

  # Twenty users, fixed 536 byte MTU, 50 ms server think time:
  python3 -m webtraffic --clients 20 --mtu 536 --response-delay 0.05

  # Everything from a file:
  python3 -m webtraffic --config experiment.yaml
        """
    )

    parser.add_argument("--config", default=None,
                        help="YAML experiment file (other scenario options are ignored)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")

    scenario = parser.add_argument_group('Scenario Options')
    scenario.add_argument("--clients", type=int, default=1,
                          help="Number of browsing clients (default: 1)")
    scenario.add_argument("--duration", type=float, default=300.0,
                          help="Virtual time to simulate in seconds (default: 300)")
    scenario.add_argument("--seed", type=int, default=1,
                          help="Seed of every random variable (default: 1)")
    scenario.add_argument("--stream", type=int, default=0,
                          help="First stream index; client i uses stream + i (default: 0)")

    http_group = parser.add_argument_group('HTTP Options')
    http_group.add_argument("--transport", default="tcp",
                            help="Transport kind (default: tcp)")
    http_group.add_argument("--request-size", type=int, default=None,
                            help="Request size in bytes (default: 350)")
    http_group.add_argument("--response-delay", type=float, default=0.0,
                            help="Server delay before each response in seconds (default: 0)")
    http_group.add_argument("--mtu", type=int, default=None,
                            help="Server MTU in bytes (default: drawn, 1460 or 536)")
    http_group.add_argument("--retries", type=int, default=0,
                            help="Client reconnect attempts after a failure (default: 0)")

    net_group = parser.add_argument_group('Network Options')
    net_group.add_argument("--link-delay", type=float, default=0.001,
                           help="One-way link delay in seconds (default: 0.001)")
    net_group.add_argument("--data-rate", type=float, default=None,
                           help="Link rate in bits per second (default: unlimited)")

    return parser


def config_from_args(args: argparse.Namespace) -> ExperimentConfig:
    """Experiment with one server and --clients clients"""
    if args.config:
        return ExperimentConfig.from_yaml(args.config)

    server = {
        "name": "server",
        "address": "10.0.0.1",
        "transport": args.transport,
        "response_delay": args.response_delay,
        "mtu": args.mtu,
    }
    clients = [
        {
            "name": f"client-{i + 1}",
            "server": "server",
            "transport": args.transport,
            "request_size": args.request_size,
            "stream": args.stream + i,
            "retry": {"max_attempts": args.retries},
        }
        for i in range(args.clients)
    ]
    return ExperimentConfig.from_dict({
        "duration": args.duration,
        "seed": args.seed,
        "network": {"link_delay": args.link_delay, "data_rate": args.data_rate},
        "servers": [server],
        "clients": clients,
    })


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = config_from_args(args)
        summary = Experiment(config).run()
    except (ValidationError, WebTrafficError, ValueError, OSError) as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
