"""
TCP connect probe.

A completed handshake is conclusive (Open). A refusal and a timeout both
count as one failed attempt: without raw sockets a dropped SYN cannot be
told apart from a closed port, so both end up Closed once the tries run out.
"""

import asyncio
import errno
import logging

from ..models import ProbeOutcome, ScanResult, State, WorkItem
from .base import ScanOperation

logger = logging.getLogger(__name__)


class ConnectOperation(ScanOperation):
    name = "tcp"

    def __init__(self, timeout: float, tries: int = 1):
        super().__init__(tries)
        self.timeout = timeout
        self._fd_warning_shown = False

    async def attempt(self, item: WorkItem) -> ProbeOutcome:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(str(item.target.ip), item.port),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            return ProbeOutcome.timeout()
        except ConnectionRefusedError:
            return ProbeOutcome.closed()
        except OSError as e:
            if e.errno in (errno.EMFILE, errno.ENFILE):
                self._warn_descriptor_limit()
            return ProbeOutcome.error(e.strerror or str(e))

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            # Peer reset during teardown; the handshake already succeeded
            pass
        return ProbeOutcome.open()

    def finalize(self, item: WorkItem) -> ScanResult:
        state = State.OPEN if item.outcome.success else State.CLOSED
        return ScanResult(
            target=item.target,
            port=item.port,
            state=state,
            attempts=item.attempts,
            reason="" if item.outcome.success else item.outcome.reason
        )

    def _warn_descriptor_limit(self):
        if not self._fd_warning_shown:
            self._fd_warning_shown = True
            logger.warning("Too many open files: results are unreliable, reduce the batch size "
                           "or raise the open-file limit (ulimit -n)")
