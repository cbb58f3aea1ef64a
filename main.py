# Standard library
import argparse
import signal
import sys

# Standard library "from" statements
from pathlib import Path
from typing import List, Optional

import runconfig
import uptime
from errors import MonitorError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="num",
        description="Monitors the uptime of a network connection and records every ping to a CSV file.",
    )
    parser.add_argument(
        "address",
        nargs="?",
        help="Host (IPv4/IPv6 address or hostname) to ping. May be omitted if the config file has one"
    )
    parser.add_argument(
        "-o", "--output",
        type=Path,
        help="Existing directory where samples and the config file are written (default: current directory)"
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help=f"Config file to resume from and write back to (default: <output>/{runconfig.DEFAULT_CONFIG_NAME})"
    )
    parser.add_argument(
        "-t", "--timeout",
        type=int,
        help="Time to wait for a reply, in milliseconds (default: 1000)"
    )
    parser.add_argument(
        "-d", "--delay",
        type=int,
        help="Time between pings, in seconds. Must be longer than the timeout (default: 120)"
    )
    parser.add_argument(
        "-n", "--num-bytes",
        type=int,
        help=f"Number of payload bytes to send (default: {runconfig.DEFAULT_NUM_BYTES})"
    )
    parser.add_argument(
        "--ttl",
        type=int,
        help=f"Time to live of each ping, 0-255 (default: {runconfig.DEFAULT_TTL})"
    )
    parser.add_argument(
        "--log-file",
        help="Also write diagnostic messages to this file"
    )
    parser.add_argument(
        "-v", "--verbose",
        default=False,
        action="store_true",
        help="Log discarded replies and other debugging detail"
    )
    return parser

# Values given on the command line, keyed like RunConfig. None means "not given".
def overrides_from(args: argparse.Namespace) -> dict:
    return {
        "address": args.address,
        "output_dir": args.output,
        "timeout": args.timeout,
        "delay": args.delay,
        "num_bytes": args.num_bytes,
        "ttl": args.ttl,
    }

def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    uptime.configure_logging(stdout=True, log_file=args.log_file, verbose=args.verbose)

    config_path = args.config or (args.output or runconfig.DEFAULT_OUTPUT_DIR) / runconfig.DEFAULT_CONFIG_NAME
    try:
        config = runconfig.load(config_path, overrides_from(args))

        if not config.output_dir.is_dir():
            uptime.LOGGER.error(f"Output path {config.output_dir} is not an existing directory. Exiting")
            return 1

        monitor = uptime.Monitor(config)
        # Every run records the values actually in effect, so later runs can omit the flags
        runconfig.save(config_path, config)

        # Stop between (or during) pings when we're politely asked to close
        signal.signal(signal.SIGINT, monitor.request_stop)
        signal.signal(signal.SIGTERM, monitor.request_stop)

        monitor.run()
    except MonitorError as e:
        uptime.LOGGER.error(f"{e}. Exiting")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(run())
