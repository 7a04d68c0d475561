import pytest

import qscan.probes.connect as connect_module


@pytest.fixture
def refuse_all(monkeypatch):
    """Every connect is refused; returns the call log."""
    calls = []

    async def refuse(host, port):
        calls.append((host, port))
        raise ConnectionRefusedError()

    monkeypatch.setattr(connect_module.asyncio, "open_connection", refuse)
    return calls
