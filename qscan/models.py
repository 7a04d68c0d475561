"""
Core data model: targets, per-attempt outcomes, work items and final results.
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class Target:
    """A resolved address. Equality and hashing ignore provenance."""
    ip: IPAddress
    source: str = field(default="", compare=False)

    @classmethod
    def from_str(cls, address: str, source: str = "") -> "Target":
        return cls(ipaddress.ip_address(address), source or address)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.ip.version, int(self.ip))

    def __str__(self) -> str:
        return str(self.ip)


class OutcomeKind(Enum):
    OPEN = "open"          # handshake completed / echo reply received
    CLOSED = "closed"      # actively refused / destination unreachable
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of one low-level attempt, fed to the retry policy."""
    kind: OutcomeKind
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.OPEN

    @classmethod
    def open(cls) -> "ProbeOutcome":
        return cls(OutcomeKind.OPEN)

    @classmethod
    def closed(cls, reason: str = "refused") -> "ProbeOutcome":
        return cls(OutcomeKind.CLOSED, reason)

    @classmethod
    def timeout(cls) -> "ProbeOutcome":
        return cls(OutcomeKind.TIMEOUT, "timed out")

    @classmethod
    def error(cls, reason: str) -> "ProbeOutcome":
        return cls(OutcomeKind.ERROR, reason)


class ItemState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    DONE = "done"


class WorkItem:
    """
    One scan unit: a target, plus a port for TCP work (None for pings).

    Lifecycle: PENDING -> IN_FLIGHT -> (DONE | RETRYING -> IN_FLIGHT ...).
    Every recorded attempt increments `attempts`, and an item can only be
    relaunched while attempts < tries, so each item terminates after at
    most `tries` attempts.
    """
    __slots__ = ("target", "port", "attempts", "state", "outcome")

    def __init__(self, target: Target, port: Optional[int] = None):
        self.target = target
        self.port = port
        self.attempts = 0
        self.state = ItemState.PENDING
        self.outcome: Optional[ProbeOutcome] = None

    def start(self):
        if self.state not in (ItemState.PENDING, ItemState.RETRYING):
            raise RuntimeError(f"cannot launch {self!r} in state {self.state.value}")
        self.state = ItemState.IN_FLIGHT

    def record(self, outcome: ProbeOutcome, tries: int) -> ItemState:
        if self.state is not ItemState.IN_FLIGHT:
            raise RuntimeError(f"{self!r} has no attempt in flight")
        self.attempts += 1
        self.outcome = outcome
        if outcome.success or self.attempts >= tries:
            self.state = ItemState.DONE
        else:
            self.state = ItemState.RETRYING
        return self.state

    def __repr__(self):
        return f"WorkItem({format_endpoint(self.target, self.port)}, attempts={self.attempts})"


class State(Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    UP = "UP"
    DOWN = "DOWN"

    @property
    def positive(self) -> bool:
        return self in (State.OPEN, State.UP)


def format_endpoint(target: Target, port: Optional[int]) -> str:
    if port is None:
        return str(target)
    if target.ip.version == 6:
        return f"[{target}]:{port}"
    return f"{target}:{port}"


@dataclass(frozen=True)
class ScanResult:
    """Final classification of one work item."""
    target: Target
    state: State
    port: Optional[int] = None
    attempts: int = 1
    reason: str = ""  # last failure reason for CLOSED/DOWN

    @property
    def sort_key(self):
        return (self.target.sort_key, self.port or 0)

    def line(self, with_state: bool = False) -> str:
        text = format_endpoint(self.target, self.port)
        return f"{text}:{self.state.value}" if with_state else text

    def to_dict(self) -> Dict:
        data = {"IP": str(self.target)}
        if self.port is not None:
            data["port"] = self.port
        data["state"] = self.state.value
        return data
