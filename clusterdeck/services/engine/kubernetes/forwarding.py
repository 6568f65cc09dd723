"""
Port forwarding primitives.

- ForwardKey: composite (namespace, endpoint, port) key
- ForwardingServer: one local listener on the loopback interface
- ForwardingTable: the desired set of forwards; a key being present means a
  listener for it should exist
- PortForwardRelay: pipes one accepted connection to a pod through the
  Kubernetes port-forward websocket
"""

import asyncio
import logging
import socket
from typing import Callable, Dict, Iterator, NamedTuple, Optional, Tuple

from kubernetes import client
from kubernetes.stream import portforward

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"

# Errors raised when the local client hangs up mid-transfer
BENIGN_SOCKET_ERRORS = (ConnectionResetError, BrokenPipeError)


class ForwardKey(NamedTuple):
    namespace: str
    endpoint: str
    port: int

    @classmethod
    def of(cls, namespace: Optional[str], endpoint: str, port: int) -> "ForwardKey":
        return cls(namespace or DEFAULT_NAMESPACE, endpoint, int(port))

    def __str__(self) -> str:
        return f"{self.namespace}/{self.endpoint}:{self.port}"


class PodReference(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}:{self.name}"


ConnectionHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], "asyncio.Future"]


class ForwardingServer:
    """
    A local TCP listener for one ForwardKey.

    The object is registered in the ForwardingTable before it is bound, so
    port is None until listen() completes. Concurrent callers wait for that
    with wait_bound().
    """

    def __init__(self, key: ForwardKey):
        self.key = key
        self.server: Optional[asyncio.AbstractServer] = None
        self.closed = False
        # Set once listen() finishes, whether it bound, failed or was closed
        self._bound = asyncio.Event()

    @property
    def port(self) -> Optional[int]:
        if self.server is None or self.closed:
            return None
        sockets = self.server.sockets or ()
        if not sockets:
            return None
        return sockets[0].getsockname()[1]

    async def listen(self, handler: ConnectionHandler, host: str = "127.0.0.1") -> Optional[int]:
        """
        Bind an ephemeral port and start accepting connections.

        Returns:
            The bound port, or None if close() was called while binding

        Raises:
            OSError: If the listener could not be bound
        """
        try:
            server = await asyncio.start_server(handler, host=host, port=0)
            self.server = server
            if self.closed:
                server.close()
                return None
            return self.port
        finally:
            self._bound.set()

    async def wait_bound(self) -> Optional[int]:
        """Wait for a listen() in progress; returns the port, if bound."""
        await self._bound.wait()
        return self.port

    def close(self) -> None:
        self.closed = True
        if self.server is not None:
            self.server.close()

    async def wait_closed(self) -> None:
        if self.server is not None:
            await self.server.wait_closed()


class ForwardingTable:
    """Desired state of port forwarding, keyed by ForwardKey."""

    def __init__(self):
        self._entries: Dict[ForwardKey, ForwardingServer] = {}

    def get(self, namespace: Optional[str], endpoint: str, port: int) -> Optional[ForwardingServer]:
        return self._entries.get(ForwardKey.of(namespace, endpoint, port))

    def set(self, server: ForwardingServer) -> None:
        self._entries[server.key] = server

    def delete(self, namespace: Optional[str], endpoint: str, port: int) -> Optional[ForwardingServer]:
        return self._entries.pop(ForwardKey.of(namespace, endpoint, port), None)

    def __contains__(self, key: ForwardKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[ForwardKey, ForwardingServer]]:
        # Snapshot, so callers may delete while iterating
        return iter(list(self._entries.items()))


class PortForwardRelay:
    """
    Relays one local connection to a pod port.

    The websocket side of kubernetes.stream.portforward is blocking, so it is
    opened in a worker thread; the local end of its socket pair is then driven
    by asyncio like any other stream.
    """

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        pod: PodReference,
        port: int,
        chunk_size: int = 65536
    ):
        self.core_v1 = core_v1
        self.pod = pod
        self.port = port
        self.chunk_size = chunk_size
        self._forward = None

    def _open_socket(self) -> socket.socket:
        self._forward = portforward(
            self.core_v1.connect_get_namespaced_pod_portforward,
            self.pod.name,
            self.pod.namespace,
            ports=str(self.port)
        )
        pod_socket = self._forward.socket(self.port)
        # The client wraps the socket; hand asyncio a plain duplicate
        sock = socket.fromfd(pod_socket.fileno(), pod_socket.family, pod_socket.type)
        pod_socket.close()
        return sock

    async def _pipe(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(self.chunk_size)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
        except BENIGN_SOCKET_ERRORS as e:
            logger.debug(f"[K8S:FORWARD] Connection to {self.pod} closed: {e}")

    async def run(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Pipe data both ways until both directions reach EOF."""
        sock = await asyncio.to_thread(self._open_socket)
        pod_reader, pod_writer = await asyncio.open_connection(sock=sock)
        try:
            await asyncio.gather(
                self._pipe(reader, pod_writer),
                self._pipe(pod_reader, writer),
            )
        finally:
            await close_writer(pod_writer)
            error = self._forward.error(self.port) if self._forward is not None else None
            if error:
                logger.warning(f"[K8S:FORWARD] Port forward to {self.pod}:{self.port} reported: {error}")


async def close_writer(writer: asyncio.StreamWriter) -> None:
    """Close a stream and wait for its transport to go away."""
    writer.close()
    try:
        await writer.wait_closed()
    except BENIGN_SOCKET_ERRORS as e:
        logger.debug(f"[K8S:FORWARD] Connection closed by peer: {e}")
