"""
Unit tests for port forwarding primitives.
"""

import asyncio
import socket
from unittest.mock import Mock

import pytest

pytest.importorskip("kubernetes")

from clusterdeck.services.engine.kubernetes.forwarding import (
    ForwardingServer,
    ForwardingTable,
    ForwardKey,
    PodReference,
    PortForwardRelay,
)


async def _noop_handler(reader, writer):
    writer.close()


@pytest.mark.unit
class TestForwardKey:

    def test_namespace_defaults(self):
        assert ForwardKey.of(None, "web", 80) == ForwardKey("default", "web", 80)
        assert ForwardKey.of("", "web", "80") == ForwardKey("default", "web", 80)
        assert str(ForwardKey.of("kube-system", "dns", 53)) == "kube-system/dns:53"


@pytest.mark.unit
class TestForwardingTable:

    def test_set_get_delete(self):
        table = ForwardingTable()
        server = ForwardingServer(ForwardKey.of(None, "web", 80))

        table.set(server)

        assert table.get("default", "web", 80) is server
        assert ForwardKey("default", "web", 80) in table
        assert table.get("default", "web", 81) is None
        assert table.delete("default", "web", 80) is server
        assert table.delete("default", "web", 80) is None
        assert len(table) == 0

    def test_iteration_allows_deletion(self):
        table = ForwardingTable()
        for port in (80, 443):
            table.set(ForwardingServer(ForwardKey.of("default", "web", port)))

        for key, _ in table:
            table.delete(*key)

        assert len(table) == 0


@pytest.mark.unit
class TestForwardingServer:

    @pytest.mark.asyncio
    async def test_port_is_none_until_bound(self):
        server = ForwardingServer(ForwardKey.of("default", "web", 80))

        assert server.port is None
        port = await server.listen(_noop_handler)

        assert port == server.port
        assert port > 0

        server.close()
        await server.wait_closed()
        assert server.port is None

    @pytest.mark.asyncio
    async def test_close_before_bind_completes(self):
        server = ForwardingServer(ForwardKey.of("default", "web", 80))
        server.close()

        assert await server.listen(_noop_handler) is None
        assert server.port is None

    @pytest.mark.asyncio
    async def test_wait_bound_returns_port_once_listening(self):
        server = ForwardingServer(ForwardKey.of("default", "web", 80))

        waiter = asyncio.create_task(server.wait_bound())
        await asyncio.sleep(0)
        assert not waiter.done()

        port = await server.listen(_noop_handler)

        assert await asyncio.wait_for(waiter, timeout=5) == port
        server.close()
        await server.wait_closed()


@pytest.mark.unit
class TestPortForwardRelay:

    @pytest.mark.asyncio
    async def test_relays_both_directions(self):
        app_sock, local_sock = socket.socketpair()
        pod_sock, cluster_sock = socket.socketpair()

        relay = PortForwardRelay(Mock(), PodReference("default", "web-1"), 80)
        relay._open_socket = lambda: pod_sock

        reader, writer = await asyncio.open_connection(sock=local_sock)
        app_reader, app_writer = await asyncio.open_connection(sock=app_sock)
        cluster_reader, cluster_writer = await asyncio.open_connection(sock=cluster_sock)

        task = asyncio.create_task(relay.run(reader, writer))
        try:
            app_writer.write(b"ping")
            await app_writer.drain()
            app_writer.write_eof()
            assert await asyncio.wait_for(cluster_reader.read(), timeout=5) == b"ping"

            cluster_writer.write(b"pong")
            await cluster_writer.drain()
            cluster_writer.write_eof()
            assert await asyncio.wait_for(app_reader.read(), timeout=5) == b"pong"

            await asyncio.wait_for(task, timeout=5)
        finally:
            for w in (writer, app_writer, cluster_writer):
                w.close()
