import ipaddress
import itertools
import json
import logging
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from .config import PrintLevel, RunConfig, ScanMode
from .errors import ConfigurationError
from .models import ScanResult, State, Target, WorkItem
from .probes.base import ScanOperation
from .probes.connect import ConnectOperation
from .probes.icmp import IcmpPinger
from .probes.ping import PingOperation
from .scheduler import Scheduler
from .sink import ResultSink
from .targets import TargetResolver
from .ui import ScannerUI
from .utils import MAX_PORT, MIN_PORT, parse_ports, strip_spec, unique

logger = logging.getLogger(__name__)


class QScanner:
    """
    Asynchronous network scanner.

    Targets are a comma separated spec of IPs, CIDR blocks, hostnames or
    files listing those; ports are a comma separated spec of ports and
    ranges. Both are resolved up front, so spec errors surface here rather
    than mid-scan.

        scanner = QScanner("127.0.0.1,10.0.0.0/30", "22,80,8000-8010",
                           RunConfig(batch=1000, timeout=500))
        results = asyncio.run(scanner.run())
    """

    def __init__(self, targets: str, ports: str = "", config: Optional[RunConfig] = None,
                 ui: Optional[ScannerUI] = None,
                 on_result: Optional[Callable[[ScanResult], None]] = None,
                 pinger_factory: Optional[Callable[[], IcmpPinger]] = None):
        self.config = config or RunConfig()
        self.ui = ui
        self.on_result = on_result
        self.pinger_factory = pinger_factory or IcmpPinger
        self.resolver = TargetResolver(hosts_only=self.config.hosts_only)

        self._targets: List[Target] = self.resolver.resolve(targets)
        self._ports: List[int] = parse_ports(ports)

        self.scheduler: Optional[Scheduler] = None
        self.ping_results: Optional[List[ScanResult]] = None
        self.last_results: Optional[List[ScanResult]] = None
        self.duration = 0.0
        self._sink: Optional[ResultSink] = None

    # --- Targets ---

    @property
    def targets(self) -> List[Target]:
        return list(self._targets)

    @property
    def ports(self) -> List[int]:
        return list(self._ports)

    def set_targets(self, targets: str, ports: str):
        """Replaces targets and ports with freshly resolved specs."""
        self._targets = self.resolver.resolve(targets)
        self._ports = parse_ports(ports)

    def add_targets(self, targets: str, ports: str):
        """Merges more specs into the current ones, keeping first-seen order."""
        if strip_spec(targets):
            self._targets = unique(self._targets + self.resolver.resolve(targets))
        self._ports = unique(self._ports + parse_ports(ports))

    def set_vec_targets(self, ips: Iterable, ports: Iterable[int]):
        self._targets = unique(self._as_targets(ips))
        self._ports = unique(self._checked_ports(ports))

    def add_vec_targets(self, ips: Iterable, ports: Iterable[int]):
        self._targets = unique(self._targets + self._as_targets(ips))
        self._ports = unique(self._ports + self._checked_ports(ports))

    @staticmethod
    def _as_targets(ips: Iterable) -> List[Target]:
        try:
            return [ip if isinstance(ip, Target) else Target(ipaddress.ip_address(ip), str(ip)) for ip in ips]
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    @staticmethod
    def _checked_ports(ports: Iterable[int]) -> List[int]:
        ports = [int(p) for p in ports]
        for port in ports:
            if not MIN_PORT <= port <= MAX_PORT:
                raise ConfigurationError(f"Invalid port '{port}': outside {MIN_PORT}-{MAX_PORT}")
        return ports

    # --- Results ---

    def get_last_results(self) -> Optional[List[ScanResult]]:
        """
        Results of the last completed phase, or whatever was finalized so
        far when a run was interrupted.
        """
        if self._sink is not None:
            return self._sink.snapshot()
        return self.last_results

    def reset_last_results(self):
        self.last_results = None
        self.ping_results = None
        self._sink = None

    def results_as_json(self) -> str:
        return json.dumps([r.to_dict() for r in self.get_last_results() or []])

    def save_results(self, filename: str):
        results = self.get_last_results() or []
        ping = None
        if self.config.mode is ScanMode.PING_THEN_TCP:
            if self.ping_results is None:
                # Interrupted during the ping phase: no TCP results yet
                ping, results = results, []
            else:
                ping = self.ping_results

        data = {
            "timestamp": datetime.now().isoformat(),
            "mode": self.config.mode.name.lower(),
            "results": [r.to_dict() for r in results]
        }
        if ping is not None:
            data["ping"] = [r.to_dict() for r in ping]

        with open(filename, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=4)
        if self.ui:
            self.ui.show_saved(filename)

    # --- Scanning ---

    async def run(self) -> List[ScanResult]:
        """
        Runs the configured mode end to end and returns the final results
        ordered by target then port.
        """
        cfg = self.config
        if cfg.uses_tcp and not self._ports:
            raise ConfigurationError("No ports to scan")
        if cfg.mode is ScanMode.PING and self._ports:
            logger.info("Ping-only mode: ignoring %d port(s)", len(self._ports))

        self.reset_last_results()
        self.scheduler = Scheduler(cfg.batch)
        if self.ui:
            self.ui.display_start(len(self._targets), len(self._ports), cfg)

        start_time = time.time()
        if cfg.mode is ScanMode.PING:
            results = await self.scan_ping(scheduler=self.scheduler)
        elif cfg.mode is ScanMode.TCP_CONNECT:
            results = await self.scan_tcp_connect(scheduler=self.scheduler)
        else:
            self.ping_results = await self.scan_ping(
                print_level=PrintLevel.SILENT, notify=False, scheduler=self.scheduler
            )
            up = [r.target for r in self.ping_results if r.state is State.UP]
            logger.info("%d of %d target(s) answered the ping", len(up), len(self.ping_results))
            results = await self.scan_tcp_connect(targets=up, scheduler=self.scheduler)
        self.duration = time.time() - start_time

        if self.ui:
            self.ui.display_summary(
                self.duration,
                ping_results=results if cfg.mode is ScanMode.PING else self.ping_results,
                tcp_results=results if cfg.uses_tcp else None
            )
        if cfg.json_path:
            self.save_results(cfg.json_path)
        return results

    async def scan_ping(self, print_level: Optional[PrintLevel] = None, notify: bool = True,
                        scheduler: Optional[Scheduler] = None) -> List[ScanResult]:
        """Ping every target. Raises PrivilegeError before sending anything if raw sockets are denied."""
        cfg = self.config
        pinger = self.pinger_factory()
        pinger.open({t.ip.version for t in self._targets}, batch=cfg.batch)
        try:
            operation = PingOperation(pinger, cfg.timeout_s, cfg.ping_tries, cfg.ping_interval_s)
            items = (WorkItem(target) for target in self._targets)
            return await self._run_phase(operation, items, len(self._targets),
                                         print_level, notify, scheduler)
        finally:
            pinger.close()

    async def scan_tcp_connect(self, targets: Optional[Sequence[Target]] = None,
                               print_level: Optional[PrintLevel] = None, notify: bool = True,
                               scheduler: Optional[Scheduler] = None) -> List[ScanResult]:
        """TCP connect scan of every target:port pair."""
        if not self._ports:
            raise ConfigurationError("No ports to scan")
        cfg = self.config
        targets = self._targets if targets is None else list(targets)
        operation = ConnectOperation(cfg.timeout_s, cfg.tcp_tries)
        # Ports outer, targets inner: consecutive launches hit different hosts
        items = (WorkItem(target, port) for port, target in itertools.product(self._ports, targets))
        return await self._run_phase(operation, items, len(targets) * len(self._ports),
                                     print_level, notify, scheduler)

    async def _run_phase(self, operation: ScanOperation, items: Iterable[WorkItem], total: int,
                         print_level: Optional[PrintLevel], notify: bool,
                         scheduler: Optional[Scheduler]) -> List[ScanResult]:
        sink = ResultSink(
            self.config.print_level if print_level is None else print_level,
            emit=self.ui.show_result if self.ui else None,
            on_result=self.on_result if notify else None
        )
        self._sink = sink
        scheduler = scheduler or Scheduler(self.config.batch)

        if self.ui:
            with self.ui.create_progress() as progress:
                task_id = progress.add_task(f"[cyan]{operation.name}: {total} probe(s)...", total=total)

                def on_done(result: ScanResult):
                    sink.add(result)
                    progress.advance(task_id)

                await scheduler.run(operation, items, on_done)
        else:
            await scheduler.run(operation, items, sink.add)

        self.last_results = sink.finish()
        self._sink = None
        return self.last_results
