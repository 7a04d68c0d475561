"""
ICMP echo over raw sockets.

One IcmpPinger owns a single raw socket per address family for a whole
ping phase. Echo requests carry the pinger's identifier and a per-probe
sequence number; a reader callback on the event loop matches replies
(and destination-unreachable errors quoting our request) back to the
waiting probe by sequence number. Packets are built and dissected with
scapy layers; only the transport is a plain non-blocking socket.

A whole batch of requests can leave in a single loop iteration, so the
receive buffer is sized from the batch, pending replies are drained
before every send, and on Linux the kernel is told to queue only echo
replies and unreachable errors.

Opening raw sockets needs root or CAP_NET_RAW. Without it `open` raises
PrivilegeError, before any probe is sent.
"""

import asyncio
import ipaddress
import logging
import os
import socket
import struct
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from scapy.layers.inet import ICMP, ICMPerror, IP
from scapy.layers.inet6 import ICMPv6DestUnreach, ICMPv6EchoReply, ICMPv6EchoRequest
from scapy.packet import Raw

from ..errors import PrivilegeError
from ..models import IPAddress, OutcomeKind, ProbeOutcome

logger = logging.getLogger(__name__)

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACH = 3
ICMP_ECHO_REQUEST = 8
ICMPV6_DEST_UNREACH = 1
ICMPV6_ECHO_REQUEST = 128
ICMPV6_ECHO_REPLY = 129

PAYLOAD = b"qscan-echo-probe"

# Linux raw socket options (linux/icmp.h, linux/icmpv6.h)
SOL_RAW = 255
ICMP_FILTER = 1
ICMP6_FILTER = 1
SO_RCVBUFFORCE = getattr(socket, "SO_RCVBUFFORCE", 33)

RCVBUF_PER_PROBE = 1024  # kernel accounting per queued reply, with headroom
MIN_RCVBUF = 256 * 1024


def build_echo_request(ident: int, seq: int, version: int = 4, payload: bytes = PAYLOAD) -> bytes:
    if version == 6:
        # The kernel computes the ICMPv6 checksum (it covers a pseudo-header)
        return bytes(ICMPv6EchoRequest(id=ident, seq=seq, data=payload, cksum=0))
    return bytes(ICMP(type=ICMP_ECHO_REQUEST, id=ident, seq=seq) / Raw(load=payload))


@dataclass(frozen=True)
class IcmpMessage:
    kind: OutcomeKind  # OPEN for an echo reply, CLOSED for unreachable
    ident: int
    seq: int


def parse_packet(packet: bytes, version: int = 4) -> Optional[IcmpMessage]:
    """
    Decodes what a raw socket hands back. IPv4 raw sockets include the IP
    header, IPv6 ones don't. Returns None for anything that is neither an
    echo reply nor an unreachable error quoting one of our echo requests.
    """
    if version == 6:
        return _parse_v6(packet)
    if len(packet) < 28:
        return None

    ip = IP(packet)
    if ICMP not in ip:
        return None
    icmp = ip[ICMP]
    if icmp.type == ICMP_ECHO_REPLY:
        return IcmpMessage(OutcomeKind.OPEN, icmp.id, icmp.seq)
    if icmp.type == ICMP_DEST_UNREACH and ICMPerror in ip:
        quoted = ip[ICMPerror]
        if quoted.type == ICMP_ECHO_REQUEST:
            return IcmpMessage(OutcomeKind.CLOSED, quoted.id, quoted.seq)
    return None


def _parse_v6(packet: bytes) -> Optional[IcmpMessage]:
    if len(packet) < 8:
        return None
    if packet[0] == ICMPV6_ECHO_REPLY:
        reply = ICMPv6EchoReply(packet)
        return IcmpMessage(OutcomeKind.OPEN, reply.id, reply.seq)
    if packet[0] == ICMPV6_DEST_UNREACH:
        error = ICMPv6DestUnreach(packet)
        if ICMPv6EchoRequest in error:
            quoted = error[ICMPv6EchoRequest]
            return IcmpMessage(OutcomeKind.CLOSED, quoted.id, quoted.seq)
    return None


def _icmp_filter(version: int) -> Tuple[int, int, bytes]:
    """setsockopt arguments letting only echo replies and unreachable errors through."""
    if version == 4:
        # One bit per ICMP type; a set bit drops that type
        mask = ~((1 << ICMP_ECHO_REPLY) | (1 << ICMP_DEST_UNREACH)) & 0xFFFFFFFF
        return SOL_RAW, ICMP_FILTER, struct.pack("I", mask)
    words = [0xFFFFFFFF] * 8
    for icmp_type in (ICMPV6_ECHO_REPLY, ICMPV6_DEST_UNREACH):
        words[icmp_type >> 5] &= ~(1 << (icmp_type & 31)) & 0xFFFFFFFF
    return socket.IPPROTO_ICMPV6, ICMP6_FILTER, struct.pack("8I", *words)


class IcmpPinger:
    _FAMILIES = {
        4: (socket.AF_INET, socket.IPPROTO_ICMP),
        6: (socket.AF_INET6, socket.IPPROTO_ICMPV6),
    }

    def __init__(self, ident: Optional[int] = None):
        self.ident = (os.getpid() if ident is None else ident) & 0xFFFF
        self._sockets: Dict[int, socket.socket] = {}
        self._waiters: Dict[int, Tuple[IPAddress, asyncio.Future]] = {}
        self._seq = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def open(self, versions: Iterable[int] = (4,), batch: int = 1):
        """
        Opens one raw socket per IP version, with room in its receive queue
        for a reply to each of `batch` outstanding probes. Must run inside
        the event loop.
        """
        self._loop = asyncio.get_running_loop()
        for version in sorted(set(versions)):
            if version in self._sockets:
                continue
            family, proto = self._FAMILIES[version]
            try:
                sock = socket.socket(family, socket.SOCK_RAW, proto)
            except PermissionError as e:
                self.close()
                raise PrivilegeError(
                    "Ping scan needs raw sockets: run as root or grant CAP_NET_RAW"
                ) from e
            except OSError as e:
                # e.g. IPv6 disabled on this host; those targets will report errors
                logger.warning("Cannot open ICMPv%d socket: %s", version, e)
                continue
            self._tune(sock, version, batch)
            sock.setblocking(False)
            self._loop.add_reader(sock.fileno(), self._drain, sock, version)
            self._sockets[version] = sock

    @staticmethod
    def _tune(sock: socket.socket, version: int, batch: int):
        size = max(MIN_RCVBUF, batch * RCVBUF_PER_PROBE)
        try:
            # Root may exceed net.core.rmem_max
            sock.setsockopt(socket.SOL_SOCKET, SO_RCVBUFFORCE, size)
        except OSError:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, size)
            except OSError as e:
                logger.warning("Cannot grow ICMPv%d receive buffer to %d bytes: %s", version, size, e)

        if sys.platform.startswith("linux"):
            try:
                sock.setsockopt(*_icmp_filter(version))
            except OSError as e:
                logger.debug("ICMPv%d filter not installed: %s", version, e)

    def close(self):
        for sock in self._sockets.values():
            if self._loop is not None and not self._loop.is_closed():
                self._loop.remove_reader(sock.fileno())
            sock.close()
        self._sockets.clear()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _next_seq(self) -> int:
        while True:
            self._seq = (self._seq + 1) & 0xFFFF
            if self._seq not in self._waiters:
                return self._seq

    async def ping(self, address: IPAddress, timeout: float) -> ProbeOutcome:
        sock = self._sockets.get(address.version)
        if sock is None:
            return ProbeOutcome.error(f"no ICMPv{address.version} socket")

        seq = self._next_seq()
        future = asyncio.get_running_loop().create_future()
        self._waiters[seq] = (address, future)
        try:
            # Free queue space for the reply this request will bring back
            self._drain(sock, address.version)
            sock.sendto(build_echo_request(self.ident, seq, address.version), (str(address), 0))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeOutcome.timeout()
        except OSError as e:
            return ProbeOutcome.error(e.strerror or str(e))
        finally:
            self._waiters.pop(seq, None)

    def _drain(self, sock: socket.socket, version: int):
        while True:
            try:
                packet, peer = sock.recvfrom(65535)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as e:
                logger.debug("ICMPv%d receive failed: %s", version, e)
                return

            message = parse_packet(packet, version)
            if message is None or message.ident != self.ident:
                continue
            waiter = self._waiters.get(message.seq)
            if waiter is None:
                continue
            address, future = waiter
            if message.kind is OutcomeKind.OPEN:
                if ipaddress.ip_address(peer[0].split("%")[0]) != address:
                    continue
                outcome = ProbeOutcome.open()
            else:
                outcome = ProbeOutcome.closed("destination unreachable")
            if not future.done():
                future.set_result(outcome)
