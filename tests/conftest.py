import asyncio

import pytest


async def open_stream_pair():
    """Two connected stream endpoints over loopback: ((r, w) client side, (r, w) server side)."""
    accepted = asyncio.get_running_loop().create_future()

    def on_connect(reader, writer):
        if not accepted.done():
            accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    client = await asyncio.open_connection("127.0.0.1", port)
    srv_side = await asyncio.wait_for(accepted, timeout=2.0)
    server.close()
    return client, srv_side


async def start_echo_server():
    async def echo(reader, writer):
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except OSError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(echo, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.fixture
def stream_pair():
    return open_stream_pair


@pytest.fixture
def echo_server():
    return start_echo_server
