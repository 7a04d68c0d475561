from enum import IntEnum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ScanMode(IntEnum):
    TCP_CONNECT = 0
    PING = 1
    PING_THEN_TCP = 2


class PrintLevel(IntEnum):
    SILENT = 0
    OPEN_AT_END = 1
    ALL_AT_END = 2
    OPEN_REALTIME = 3
    ALL_REALTIME = 4


class RunConfig(BaseModel):
    """
    Validation model for one engine run.
    Enforces strict types and safe ranges before execution, and is
    frozen so nothing can change it while a scan is in progress.
    """
    model_config = ConfigDict(frozen=True)

    batch: int = Field(5000, ge=1, le=65535)
    timeout: int = Field(1500, gt=0)  # ms, per attempt
    tcp_tries: int = Field(1, ge=1, le=255)
    ping_tries: int = Field(1, ge=1, le=255)
    ping_interval: int = Field(1000, ge=0)  # ms, between pings to one target
    mode: ScanMode = ScanMode.TCP_CONNECT
    print_level: PrintLevel = PrintLevel.OPEN_REALTIME
    hosts_only: bool = False
    json_path: Optional[str] = None

    @property
    def timeout_s(self) -> float:
        return self.timeout / 1000

    @property
    def ping_interval_s(self) -> float:
        return self.ping_interval / 1000

    @property
    def realtime(self) -> bool:
        return self.print_level in (PrintLevel.OPEN_REALTIME, PrintLevel.ALL_REALTIME)

    @property
    def uses_ping(self) -> bool:
        return self.mode in (ScanMode.PING, ScanMode.PING_THEN_TCP)

    @property
    def uses_tcp(self) -> bool:
        return self.mode in (ScanMode.TCP_CONNECT, ScanMode.PING_THEN_TCP)
