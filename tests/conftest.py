"""Shared fixtures for the netmeter test suite."""

import pytest
import pytest_asyncio

from netmeter_server.server import NetmeterServer


@pytest.fixture
def events():
    return []


@pytest_asyncio.fixture
async def server(events):
    srv = NetmeterServer(host="127.0.0.1", port=0, budget=0.5, on_event=events.append)
    await srv.start()
    try:
        yield srv
    finally:
        await srv.stop()


@pytest.fixture
def base(server):
    return f"http://127.0.0.1:{server.port}"
