"""
Unit tests for qscan spec parsing, configuration, models and result reporting.
Run with: pytest tests/ -v
"""
import ipaddress
import socket

import pytest

from qscan.config import PrintLevel, RunConfig, ScanMode
from qscan.errors import ConfigurationError, PartialResolutionWarning
from qscan.models import ItemState, ProbeOutcome, ScanResult, State, Target, WorkItem
from qscan.sink import ResultSink
from qscan.targets import TargetResolver
from qscan.utils import parse_ports


def ips(targets):
    return [str(t) for t in targets]


class TestPortParser:
    """Test port spec expansion"""

    def test_parse_mixed(self):
        """Literals and ranges expand to their union"""
        assert set(parse_ports("80,22,1000-1002")) == {22, 80, 1000, 1001, 1002}

    def test_parse_single_port(self):
        assert parse_ports("80") == [80]

    def test_parse_range_inclusive(self):
        assert parse_ports("80-83") == [80, 81, 82, 83]

    def test_duplicates_removed_keeping_order(self):
        """First appearance wins"""
        assert parse_ports("80,80") == [80]
        assert parse_ports("80,79-81") == [80, 79, 81]
        assert parse_ports("80,128,79-81") == [80, 128, 79, 81]

    def test_whitespace_ignored(self):
        assert parse_ports("80, 443,8080") == [80, 443, 8080]

    def test_empty_spec(self):
        """Empty spec is valid (ping-only runs)"""
        assert parse_ports("") == []
        assert parse_ports(",,,") == []

    def test_bounds(self):
        assert parse_ports("1,65535") == [1, 65535]
        assert parse_ports("65535-65535") == [65535]

    @pytest.mark.parametrize("spec, token", [
        ("0", "0"),
        ("80,65536", "65536"),
        ("abc", "abc"),
        ("90-80", "90-80"),
        ("1-2-3", "1-2-3"),
        ("80-", "80-"),
        ("22,-5", "-5"),
        ("8²", "8²"),
        ("٨٠", "٨٠"),
        ("80-٨١", "80-٨١"),
    ])
    def test_malformed_token_named(self, spec, token):
        """Bad tokens fail with an error naming the token"""
        with pytest.raises(ConfigurationError) as exc:
            parse_ports(spec)
        assert f"'{token}'" in str(exc.value)


class TestTargetResolver:
    """Test target spec resolution"""

    def test_single_ip(self):
        assert ips(TargetResolver().resolve("127.0.0.1")) == ["127.0.0.1"]

    def test_ipv6_literal(self):
        assert ips(TargetResolver().resolve("::1")) == ["::1"]

    def test_duplicates_removed(self):
        assert ips(TargetResolver().resolve("127.0.0.1,127.0.0.1")) == ["127.0.0.1"]

    def test_union_is_order_stable(self):
        """Overlapping IPs and CIDRs keep first-seen order"""
        res = TargetResolver().resolve("127.0.0.1,192.168.1.1,127.0.0.0/30")
        assert ips(res) == ["127.0.0.1", "192.168.1.1", "127.0.0.0", "127.0.0.2", "127.0.0.3"]

    def test_cidr_and_whitespace(self):
        res = TargetResolver().resolve("127.0.0.1,127.0.0.10/31, 127.0.0.2")
        assert ips(res) == ["127.0.0.1", "127.0.0.10", "127.0.0.11", "127.0.0.2"]

    def test_cidr_includes_network_and_broadcast_by_default(self):
        """/30 -> all four addresses"""
        res = TargetResolver().resolve("10.0.0.0/30")
        assert ips(res) == ["10.0.0.0", "10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_cidr_hosts_only(self):
        """/30 with hosts_only -> the two usable host addresses"""
        res = TargetResolver(hosts_only=True).resolve("10.0.0.0/30")
        assert ips(res) == ["10.0.0.1", "10.0.0.2"]

    @pytest.mark.parametrize("hosts_only", [False, True])
    def test_small_blocks_never_trimmed(self, hosts_only):
        """/31 and /32 keep every address under both conventions"""
        resolver = TargetResolver(hosts_only=hosts_only)
        assert ips(resolver.resolve("10.0.0.4/31")) == ["10.0.0.4", "10.0.0.5"]
        assert ips(resolver.resolve("10.0.0.9/32")) == ["10.0.0.9"]

    def test_cidr_host_bits_tolerated(self):
        assert ips(TargetResolver().resolve("10.0.0.1/30")) == ["10.0.0.0", "10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_provenance_kept(self):
        res = TargetResolver().resolve("10.0.0.0/31")
        assert all(t.source == "10.0.0.0/31" for t in res)

    def test_hostname_resolves_to_all_addresses(self):
        resolver = TargetResolver(resolve=lambda host: ["192.0.2.1", "2001:db8::1"])
        res = resolver.resolve("example.test")
        assert ips(res) == ["192.0.2.1", "2001:db8::1"]
        assert res[0].source == "example.test"

    def test_unresolvable_hostname_is_partial(self):
        """One bad token warns but does not abort the others"""
        def lookup(host):
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

        resolver = TargetResolver(resolve=lookup)
        res = resolver.resolve("no-such-host.invalid,127.0.0.1")
        assert ips(res) == ["127.0.0.1"]
        assert len(resolver.warnings) == 1
        assert isinstance(resolver.warnings[0], PartialResolutionWarning)
        assert resolver.warnings[0].token == "no-such-host.invalid"

    def test_malformed_cidr_is_partial(self):
        resolver = TargetResolver()
        res = resolver.resolve("10.0.0.0/33,127.0.0.1")
        assert ips(res) == ["127.0.0.1"]
        assert resolver.warnings[0].token == "10.0.0.0/33"

    def test_zero_targets_is_fatal(self):
        with pytest.raises(ConfigurationError):
            TargetResolver().resolve("")
        with pytest.raises(ConfigurationError):
            TargetResolver().resolve(",,,")
        with pytest.raises(ConfigurationError):
            TargetResolver().resolve("10.0.0.0/99")

    def test_file_of_targets(self, tmp_path):
        """Each line of a file is an IP, CIDR or hostname"""
        path = tmp_path / "targets.txt"
        path.write_text("# lab hosts\n127.0.0.1\n\n10.0.0.0/31\nhost.test\n")
        resolver = TargetResolver(resolve=lambda host: ["192.0.2.7"])
        res = resolver.resolve(f"{path},127.0.0.1")
        assert ips(res) == ["127.0.0.1", "10.0.0.0", "10.0.0.1", "192.0.2.7"]

    def test_file_with_bad_line_is_partial(self, tmp_path):
        path = tmp_path / "targets.txt"
        path.write_text("127.0.0.5\n10.0.0.0/40\n")
        resolver = TargetResolver()
        assert ips(resolver.resolve(str(path))) == ["127.0.0.5"]
        assert len(resolver.warnings) == 1


class TestRunConfig:
    """Test Pydantic run configuration"""

    def test_defaults(self):
        config = RunConfig()
        assert config.batch == 5000
        assert config.timeout == 1500
        assert config.tcp_tries == 1
        assert config.mode is ScanMode.TCP_CONNECT
        assert config.print_level is PrintLevel.OPEN_REALTIME
        assert config.timeout_s == 1.5

    def test_int_enums_accepted(self):
        config = RunConfig(mode=2, print_level=1)
        assert config.mode is ScanMode.PING_THEN_TCP
        assert config.uses_ping and config.uses_tcp
        assert not config.realtime

    def test_invalid_batch(self):
        with pytest.raises(Exception):
            RunConfig(batch=0)

    def test_invalid_timeout(self):
        with pytest.raises(Exception):
            RunConfig(timeout=0)

    def test_invalid_tries(self):
        with pytest.raises(Exception):
            RunConfig(tcp_tries=0)

    def test_invalid_mode(self):
        with pytest.raises(Exception):
            RunConfig(mode=3)

    def test_frozen(self):
        """Read-only once built"""
        config = RunConfig()
        with pytest.raises(Exception):
            config.batch = 10


class TestModels:
    """Test targets, work items and results"""

    def test_target_equality_ignores_source(self):
        a = Target.from_str("10.0.0.1", "10.0.0.0/30")
        b = Target.from_str("10.0.0.1", "hosts.txt")
        assert a == b
        assert len({a, b}) == 1

    def test_work_item_stops_on_success(self):
        item = WorkItem(Target.from_str("10.0.0.1"), 80)
        item.start()
        assert item.record(ProbeOutcome.open(), tries=3) is ItemState.DONE
        assert item.attempts == 1

    def test_work_item_exhausts_tries(self):
        item = WorkItem(Target.from_str("10.0.0.1"), 80)
        for _ in range(2):
            item.start()
            assert item.record(ProbeOutcome.timeout(), tries=3) is ItemState.RETRYING
        item.start()
        assert item.record(ProbeOutcome.closed(), tries=3) is ItemState.DONE
        assert item.attempts == 3

    def test_work_item_rejects_bad_transitions(self):
        item = WorkItem(Target.from_str("10.0.0.1"), 80)
        with pytest.raises(RuntimeError):
            item.record(ProbeOutcome.open(), tries=1)
        item.start()
        item.record(ProbeOutcome.open(), tries=1)
        with pytest.raises(RuntimeError):
            item.start()

    def test_result_lines(self):
        v4 = ScanResult(Target.from_str("10.0.0.1"), State.OPEN, 80)
        v6 = ScanResult(Target.from_str("::1"), State.CLOSED, 22)
        ping = ScanResult(Target.from_str("10.0.0.2"), State.DOWN)
        assert v4.line() == "10.0.0.1:80"
        assert v4.line(with_state=True) == "10.0.0.1:80:OPEN"
        assert v6.line(with_state=True) == "[::1]:22:CLOSED"
        assert ping.line(with_state=True) == "10.0.0.2:DOWN"

    def test_result_to_dict(self):
        tcp = ScanResult(Target.from_str("10.0.0.1"), State.OPEN, 80)
        ping = ScanResult(Target.from_str("10.0.0.1"), State.UP)
        assert tcp.to_dict() == {"IP": "10.0.0.1", "port": 80, "state": "OPEN"}
        assert ping.to_dict() == {"IP": "10.0.0.1", "state": "UP"}

    def test_sort_key_orders_numerically(self):
        results = [
            ScanResult(Target.from_str("10.0.0.10"), State.OPEN, 22),
            ScanResult(Target.from_str("10.0.0.9"), State.OPEN, 80),
            ScanResult(Target.from_str("10.0.0.9"), State.OPEN, 22),
        ]
        ordered = sorted(results, key=lambda r: r.sort_key)
        assert [r.line() for r in ordered] == ["10.0.0.9:22", "10.0.0.9:80", "10.0.0.10:22"]


def make_results():
    return [
        ScanResult(Target.from_str("10.0.0.2"), State.CLOSED, 80),
        ScanResult(Target.from_str("10.0.0.1"), State.OPEN, 443),
        ScanResult(Target.from_str("10.0.0.1"), State.CLOSED, 22),
    ]


class TestResultSink:
    """Test real-time vs batched reporting and print levels"""

    def collect(self, level):
        lines = []
        handed = []
        sink = ResultSink(level, emit=lambda line, result: lines.append(line), on_result=handed.append)
        return sink, lines, handed

    def test_realtime_emits_in_completion_order(self):
        sink, lines, handed = self.collect(PrintLevel.ALL_REALTIME)
        results = make_results()
        sink.add(results[0])
        assert lines == ["10.0.0.2:80:CLOSED"]
        for r in results[1:]:
            sink.add(r)
        assert lines == ["10.0.0.2:80:CLOSED", "10.0.0.1:443:OPEN", "10.0.0.1:22:CLOSED"]
        assert handed == results

    def test_realtime_open_only(self):
        sink, lines, _ = self.collect(PrintLevel.OPEN_REALTIME)
        for r in make_results():
            sink.add(r)
        assert lines == ["10.0.0.1:443"]

    def test_batched_waits_for_finish(self):
        sink, lines, handed = self.collect(PrintLevel.ALL_AT_END)
        for r in make_results():
            sink.add(r)
        assert lines == [] and handed == []
        final = sink.finish()
        assert lines == ["10.0.0.1:22:CLOSED", "10.0.0.1:443:OPEN", "10.0.0.2:80:CLOSED"]
        assert handed == final

    def test_batched_open_only(self):
        sink, lines, _ = self.collect(PrintLevel.OPEN_AT_END)
        for r in make_results():
            sink.add(r)
        sink.finish()
        assert lines == ["10.0.0.1:443"]

    @pytest.mark.parametrize("level", list(PrintLevel))
    def test_never_drops_results(self, level):
        """Every print level returns the complete, ordered set"""
        sink, _, _ = self.collect(level)
        for r in make_results():
            sink.add(r)
        final = sink.finish()
        assert len(final) == 3
        assert [r.line() for r in final] == ["10.0.0.1:22", "10.0.0.1:443", "10.0.0.2:80"]

    def test_silent_prints_nothing(self):
        sink, lines, _ = self.collect(PrintLevel.SILENT)
        for r in make_results():
            sink.add(r)
        sink.finish()
        assert lines == []

    def test_finish_narrates_once(self):
        sink, lines, _ = self.collect(PrintLevel.ALL_AT_END)
        sink.add(make_results()[0])
        sink.finish()
        sink.finish()
        assert len(lines) == 1
