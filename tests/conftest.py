import asyncio
import itertools

import pytest
import pytest_asyncio

from relay import RelayServer

T0 = 1700000000000


class FakeTransport:
    """Stands in for a websocket connection on the relay's send side."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.closed = False
        self.remote_address = ('fake', 0)

    async def send(self, payload):
        if self.fail:
            raise ConnectionResetError('peer went away')
        self.sent.append(payload)

    async def close(self, code=1000, reason=''):
        self.closed = True


async def recv(ws, timeout=2.0):
    return await asyncio.wait_for(ws.recv(), timeout)


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    ticks = itertools.count(T0)
    return lambda: next(ticks)


@pytest_asyncio.fixture
async def relay(clock):
    server = RelayServer(clock=clock)
    await server.start('127.0.0.1', 0)
    yield server
    await server.close()


@pytest.fixture
def url(relay):
    return f'ws://127.0.0.1:{relay.port}'
