"""
Kubernetes Client for the Managed Cluster

KubeClient only ever talks to the cluster the engine spins up itself: it
pins the kubeconfig context to the minikube profile name. It keeps a watch
on Services, and owns the local port forwarding listeners.

Create it only once the cluster is running; call destroy() before the
cluster goes away.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import asyncio
import logging
from typing import Callable, List, Optional

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, stop_never, wait_fixed

from ....config import Settings, get_settings
from ....schemas import ServiceEntry
from ..errors import NotReadyTimeout
from ..events import EventRegistry
from ..state import SERVICE_CHANGED
from .forwarding import (
    BENIGN_SOCKET_ERRORS,
    ForwardKey,
    ForwardingServer,
    ForwardingTable,
    PodReference,
    PortForwardRelay,
    close_writer,
)
from .watch import ServiceWatchCache

logger = logging.getLogger(__name__)


class KubeClient:
    """
    Cluster access client: service listing, port forwarding, and
    service-changed notifications.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        core_v1: Optional[client.CoreV1Api] = None,
        watch_factory: Optional[Callable] = None
    ):
        """
        Load the kubeconfig and start watching services.

        Must be called with a running event loop.

        Args:
            settings: Engine settings (default: get_settings())
            core_v1: Preconfigured API client (default: built from kubeconfig)
            watch_factory: Factory for kubernetes.watch.Watch objects
        """
        self.settings = settings or get_settings()
        self.context = self.settings.minikube_profile
        self._configuration: Optional[client.Configuration] = None

        if core_v1 is None:
            self._configuration = client.Configuration()
            try:
                config.load_kube_config(
                    config_file=self.settings.kubeconfig_path or None,
                    context=self.context,
                    client_configuration=self._configuration
                )
            except config.ConfigException as e:
                logger.error(f"[K8S] Failed to load kubeconfig for context {self.context}: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e
            core_v1 = client.CoreV1Api(client.ApiClient(self._configuration))
            logger.info(f"[K8S] Loaded kubeconfig, context: {self.context}")

        self.core_v1 = core_v1
        self.events = EventRegistry()
        self.shutdown = False

        # Active port forwarding servers.  This records the desired state: if
        # an entry exists, then we want port forwarding for it.
        self.servers = ForwardingTable()

        watch_kwargs = {"watch_factory": watch_factory} if watch_factory else {}
        self.services = ServiceWatchCache(self.core_v1, self._on_services_changed, **watch_kwargs)
        self.services.start()

    def subscribe(self, event: str, callback: Callable) -> None:
        self.events.subscribe(event, callback)

    def _on_services_changed(self, event_type: str, service) -> None:
        if self.shutdown:
            return
        self.events.emit(SERVICE_CHANGED, self.list_services())

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        kubernetes.stream temporarily patches api_client.request to use a
        WebSocket; a dedicated client keeps concurrent regular calls (the
        endpoint polling) from picking up the patched method.
        """
        if self._configuration is None:
            return self.core_v1
        return client.CoreV1Api(client.ApiClient(self._configuration))

    def destroy(self) -> None:
        """
        Notify the client that the cluster is about to go away; drop all
        pending work.
        """
        self.shutdown = True
        self.services.stop()
        for key, server in self.servers:
            self.servers.delete(*key)
            server.close()
        self.events.clear(SERVICE_CHANGED)
        logger.info("[K8S] Kubernetes client destroyed")

    # =========================================================================
    # POD RESOLUTION
    # =========================================================================

    async def _find_endpoint_target(self, namespace: str, endpoint_name: str) -> Optional[PodReference]:
        """Return the first pod reference behind an endpoint, if any."""
        try:
            endpoints = await asyncio.to_thread(
                self.core_v1.read_namespaced_endpoints,
                name=endpoint_name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

        for subset in endpoints.subsets or []:
            for address in subset.addresses or []:
                ref = address.target_ref
                if ref is not None and ref.name:
                    return PodReference(ref.namespace or namespace, ref.name)
        return None

    async def get_active_pod(self, namespace: str, endpoint_name: str) -> Optional[PodReference]:
        """
        Return a pod that is part of a given endpoint and ready to receive
        traffic.

        Polls until a ready pod shows up or the client is shut down.

        Args:
            namespace: The namespace in which to look for resources
            endpoint_name: The name of an endpoint that controls ready pods

        Returns:
            The pod, or None if the client was shut down first

        Raises:
            NotReadyTimeout: If pod_ready_timeout is set and expires
        """
        logger.info(f"[K8S] Attempting to locate {endpoint_name} pod...")
        timeout = self.settings.pod_ready_timeout
        target = None

        def _should_retry(found: Optional[PodReference]) -> bool:
            if found is None and not self.shutdown:
                logger.info(f"[K8S] Could not find {endpoint_name} pod, retrying...")
                return True
            return False

        try:
            async for attempt in AsyncRetrying(
                wait=wait_fixed(self.settings.pod_poll_interval),
                stop=stop_after_delay(timeout) if timeout > 0 else stop_never,
                retry=retry_if_result(_should_retry),
            ):
                with attempt:
                    target = await self._find_endpoint_target(namespace, endpoint_name)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(target)
        except RetryError as e:
            raise NotReadyTimeout(
                f"No ready pod for {namespace}/{endpoint_name} after {timeout} seconds"
            ) from e

        if target is None:
            return None

        pod = await asyncio.to_thread(
            self.core_v1.read_namespaced_pod,
            name=target.name,
            namespace=target.namespace
        )
        if pod.metadata is None or not pod.metadata.name:
            raise RuntimeError(f"Active {namespace}/{endpoint_name} pod has no name")

        result = PodReference(pod.metadata.namespace or target.namespace, pod.metadata.name)
        logger.info(f"[K8S] Got {endpoint_name} pod: {result}")
        return result

    # =========================================================================
    # PORT FORWARDING
    # =========================================================================

    async def _handle_connection(
        self,
        key: ForwardKey,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ) -> None:
        """Relay one accepted local connection to the active pod."""
        try:
            pod = await self.get_active_pod(key.namespace, key.endpoint)
            if pod is None or key not in self.servers:
                logger.info(f"[K8S:FORWARD] Port forwarding to {key} was cancelled")
                return
            relay = PortForwardRelay(self._get_stream_client(), pod, key.port)
            await relay.run(reader, writer)
        except BENIGN_SOCKET_ERRORS as e:
            logger.debug(f"[K8S:FORWARD] Client disconnected from {key}: {e}")
        except Exception as e:
            logger.error(f"[K8S:FORWARD] Failed to create web socket for forwarding to {key}: {e}")
        finally:
            await close_writer(writer)

    async def create_forwarding_server(self, namespace: Optional[str], endpoint: str, port: int) -> None:
        """
        Create a port forwarding, listening on localhost.  If the endpoint
        isn't ready yet, connections wait until it is.

        Args:
            namespace: The namespace to forward to
            endpoint: The endpoint in the namespace to forward to
            port: The port to forward to on the endpoint
        """
        key = ForwardKey.of(namespace, endpoint, port)

        existing = self.servers.get(*key)
        if existing is not None:
            # We already have a port forwarding server; don't clobber it, but
            # let it finish binding so the caller can read its port.
            await existing.wait_bound()
            return
        logger.info(f"[K8S:FORWARD] Setting up new port forwarding to {key}...")

        server = ForwardingServer(key)
        self.servers.set(server)

        async def handler(reader, writer):
            await self._handle_connection(key, reader, writer)

        try:
            await server.listen(handler, host=self.settings.forward_bind_host)
        except Exception:
            if self.servers.get(*key) is server:
                self.servers.delete(*key)
            server.close()
            raise

        if self.servers.get(*key) is not server:
            # The forwarding was cancelled, or a new one replaced it.
            server.close()
            return

        # Trigger a UI refresh, because a new port forward was set up.
        self.events.emit(SERVICE_CHANGED, self.list_services())

    async def forward_port(self, namespace: Optional[str], endpoint: str, port: int) -> Optional[int]:
        """
        Create a port forward for an endpoint, listening on localhost.

        Returns:
            The local port number, or None if forwarding was cancelled
            while it was being set up
        """
        key = ForwardKey.of(namespace, endpoint, port)
        await self.create_forwarding_server(namespace, endpoint, port)

        local_port = self.get_forwarded_port(namespace, endpoint, port)
        if local_port is None:
            # Port forwarding was cancelled while we were waiting.
            return None

        logger.info(f"[K8S:FORWARD] Port forwarding is ready: {key} -> localhost:{local_port}.")
        return local_port

    async def cancel_forward_port(self, namespace: Optional[str], endpoint: str, port: int) -> None:
        """Ensure that a given port forwarding does not exist."""
        server = self.servers.delete(namespace, endpoint, port)
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info(f"[K8S:FORWARD] Cancelled port forwarding to {server.key}")
        self.events.emit(SERVICE_CHANGED, self.list_services())

    def get_forwarded_port(self, namespace: Optional[str], endpoint: str, port: int) -> Optional[int]:
        """Get the local port for a given forwarding, if it is bound."""
        server = self.servers.get(namespace, endpoint, port)
        return server.port if server is not None else None

    # =========================================================================
    # SERVICES
    # =========================================================================

    def list_services(self, namespace: Optional[str] = None) -> List[ServiceEntry]:
        """
        Get the cached list of service ports.

        Args:
            namespace: Limit to this namespace; None returns all namespaces
        """
        entries = []
        for service in self.services.list(namespace):
            metadata = service.metadata
            service_namespace = metadata.namespace if metadata else None
            name = (metadata.name if metadata else None) or ""
            ports = service.spec.ports if service.spec and service.spec.ports else []
            for service_port in ports:
                port_number = _internal_port(service_port)
                listen_port = None
                if port_number is not None:
                    listen_port = self.get_forwarded_port(service_namespace, name, port_number)
                entries.append(ServiceEntry(
                    namespace=service_namespace,
                    name=name,
                    port_name=service_port.name,
                    port=port_number,
                    listen_port=listen_port,
                ))
        return entries


def _internal_port(service_port: client.V1ServicePort) -> Optional[int]:
    """The pod-side port of a service port; named target ports fall back to port."""
    target = service_port.target_port
    if isinstance(target, int):
        return target
    if isinstance(target, str) and target.isdigit():
        return int(target)
    return service_port.port
