import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError
from rich.logging import RichHandler

from .config import PrintLevel, RunConfig, ScanMode
from .errors import ConfigurationError, PrivilegeError
from .scanner import QScanner
from .sink import ResultSink
from .ui import ScannerUI, err_console

EXIT_OK = 0
EXIT_PRIVILEGE = 77
EXIT_CONFIG = 78
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="qscan - asynchronous TCP connect / ping scanner",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument("--targets", required=True,
                        help="Comma separated targets: IPs, CIDR blocks, hostnames, or files\n"
                             "listing one of those per line (e.g. '8.8.8.8,10.0.0.0/24,hosts.txt')")
    parser.add_argument("--ports", default="",
                        help="Comma separated ports and ranges (e.g. '22,80,1000-2000')")
    parser.add_argument("--batch", type=int, default=5000,
                        help="Maximum concurrent probes across the whole scan (Default: 5000).\n"
                             "Keep it below the open-file limit (ulimit -n)")
    parser.add_argument("--timeout", type=int, default=1500,
                        help="Per-attempt timeout in ms (Default: 1500)")
    parser.add_argument("--mode", type=int, default=0, choices=[m.value for m in ScanMode],
                        help="0: TCP connect\n"
                             "1: ping only (--ports is ignored)\n"
                             "2: ping, then TCP connect to the hosts that replied")
    parser.add_argument("--tcp-tries", type=int, default=1,
                        help="Attempts per target:port before it is reported closed (Default: 1)")
    parser.add_argument("--ping-tries", type=int, default=1,
                        help="Pings per target before it is reported down (Default: 1)")
    parser.add_argument("--ping-interval", type=int, default=1000,
                        help="Pause in ms between pings to the same target (Default: 1000)")
    parser.add_argument("--printlevel", type=int, default=3, choices=[p.value for p in PrintLevel],
                        help="0: no result output\n"
                             "1: open/up results at the end\n"
                             "2: every result with its state at the end\n"
                             "3: open/up results as soon as they are found\n"
                             "4: every result with its state as soon as it is known")
    parser.add_argument("--json", help="Save the complete result set to this JSON file")
    parser.add_argument("--hosts-only", action="store_true",
                        help="Skip network and broadcast addresses when expanding CIDR blocks")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)]
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    ui = ScannerUI()

    # 1. Validate configuration and resolve specs before touching the network
    try:
        config = RunConfig(
            batch=args.batch,
            timeout=args.timeout,
            tcp_tries=args.tcp_tries,
            ping_tries=args.ping_tries,
            ping_interval=args.ping_interval,
            mode=args.mode,
            print_level=args.printlevel,
            hosts_only=args.hosts_only,
            json_path=args.json
        )
        scanner = QScanner(args.targets, args.ports, config, ui=ui)
    except (ValidationError, ConfigurationError) as e:
        ui.show_message(f"Configuration error: {e}")
        return EXIT_CONFIG

    # 2. Run
    try:
        asyncio.run(scanner.run())
    except ConfigurationError as e:
        ui.show_message(f"Configuration error: {e}")
        return EXIT_CONFIG
    except PrivilegeError as e:
        ui.show_message(f"Permission error: {e}")
        return EXIT_PRIVILEGE
    except KeyboardInterrupt:
        ui.show_message("Scan interrupted by user.", style="yellow")
        if not config.realtime:
            # Batched print levels have not printed anything yet
            sink = ResultSink(config.print_level, emit=ui.show_result)
            for result in scanner.get_last_results() or []:
                sink.add(result)
            sink.finish()
        if config.json_path:
            scanner.save_results(config.json_path)
        return EXIT_INTERRUPTED

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
