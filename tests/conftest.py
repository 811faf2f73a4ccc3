import pytest_asyncio
from broker import run
from tether.client import connect


@pytest_asyncio.fixture
async def server():
    server = await run()
    yield server
    await server.shutdown()


@pytest_asyncio.fixture
async def client(server):
    client = await connect(server.client_url, timeout=1.0)
    yield client
    await client.close()
