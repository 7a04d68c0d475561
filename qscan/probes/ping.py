from ..models import ProbeOutcome, ScanResult, State, WorkItem
from .base import ScanOperation


class PingOperation(ScanOperation):
    """
    Liveness probe for one target. The first reply is conclusive (Up);
    failed attempts are spaced by `interval` seconds, since pinging the
    same host back-to-back mostly measures its rate limiter.
    """
    name = "ping"

    def __init__(self, pinger, timeout: float, tries: int = 1, interval: float = 1.0):
        super().__init__(tries)
        self.pinger = pinger
        self.timeout = timeout
        self.retry_delay = interval

    async def attempt(self, item: WorkItem) -> ProbeOutcome:
        return await self.pinger.ping(item.target.ip, self.timeout)

    def finalize(self, item: WorkItem) -> ScanResult:
        up = item.outcome.success
        return ScanResult(
            target=item.target,
            state=State.UP if up else State.DOWN,
            attempts=item.attempts,
            reason="" if up else item.outcome.reason
        )
