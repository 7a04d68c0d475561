from abc import ABC, abstractmethod

from ..models import ProbeOutcome, ScanResult, WorkItem


class ScanOperation(ABC):
    """
    One kind of probe the Scheduler can drive.

    `attempt` performs a single network attempt and must report failures
    as a ProbeOutcome instead of raising. `finalize` turns a finished
    WorkItem into its ScanResult.
    """
    name = "scan"
    retry_delay = 0.0  # seconds a failed item waits before it is relaunched

    def __init__(self, tries: int):
        self.tries = max(1, tries)

    @abstractmethod
    async def attempt(self, item: WorkItem) -> ProbeOutcome:
        raise NotImplementedError

    @abstractmethod
    def finalize(self, item: WorkItem) -> ScanResult:
        raise NotImplementedError
