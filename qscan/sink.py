from typing import Callable, List, Optional

from .config import PrintLevel
from .models import ScanResult

Emitter = Callable[[str, ScanResult], None]


class ResultSink:
    """
    Collects finalized results for one phase.

    Print levels 3 and 4 are real-time: each result is narrated and handed
    to `on_result` the moment it is finalized, in completion order. Levels
    0-2 are batched: nothing happens until `finish`, which hands over the
    whole set ordered by target then port.

    The print level only filters console narration. `finish` always
    returns every result exactly once.

    Only the event loop thread touches the sink, so no locking is needed.
    """

    def __init__(self, print_level: PrintLevel = PrintLevel.SILENT,
                 emit: Optional[Emitter] = None,
                 on_result: Optional[Callable[[ScanResult], None]] = None):
        self.print_level = PrintLevel(print_level)
        self.emit = emit
        self.on_result = on_result
        self._results: List[ScanResult] = []
        self._finished = False

    @property
    def realtime(self) -> bool:
        return self.print_level in (PrintLevel.OPEN_REALTIME, PrintLevel.ALL_REALTIME)

    @property
    def with_state(self) -> bool:
        return self.print_level in (PrintLevel.ALL_AT_END, PrintLevel.ALL_REALTIME)

    def __len__(self):
        return len(self._results)

    def add(self, result: ScanResult):
        self._results.append(result)
        if self.realtime:
            self._hand_over(result)

    def snapshot(self) -> List[ScanResult]:
        """Everything finalized so far, ordered. Used after an interrupt."""
        return sorted(self._results, key=lambda r: r.sort_key)

    def finish(self) -> List[ScanResult]:
        ordered = self.snapshot()
        if not self._finished and not self.realtime:
            for result in ordered:
                self._hand_over(result)
        self._finished = True
        return ordered

    def _hand_over(self, result: ScanResult):
        if self.emit and self.print_level is not PrintLevel.SILENT:
            if self.with_state or result.state.positive:
                self.emit(result.line(with_state=self.with_state), result)
        if self.on_result:
            self.on_result(result)
