"""
Service Watch Cache

Keeps a local copy of every Service in the cluster, refreshed by a
list-then-watch loop against /api/v1/services.

The kubernetes client's watch stream is blocking, so it runs in a daemon
thread; every event is handed back to the event loop before it touches the
cache, which is therefore only mutated on the loop thread. The stream cannot
be interrupted mid-read, so each watch request is bounded by timeout_seconds
and stop() does not wait for the thread.
"""

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
SYNCED = "SYNCED"  # Emitted after a full (re)list

ChangeCallback = Callable[[str, Optional[client.V1Service]], None]


def _service_key(service: client.V1Service) -> Tuple[str, str]:
    metadata = service.metadata
    return (metadata.namespace or "default", metadata.name)


class ServiceWatchCache:
    """
    List-and-watch cache of Service objects across all namespaces.

    on_change is called on the event loop once per watch event, in stream
    order, and once after every full list.
    """

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        on_change: ChangeCallback,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
        timeout_seconds: int = 30,
        retry_interval: float = 1.0
    ):
        self.core_v1 = core_v1
        self.on_change = on_change
        self.watch_factory = watch_factory
        self.timeout_seconds = timeout_seconds
        self.retry_interval = retry_interval

        self._services: Dict[Tuple[str, str], client.V1Service] = {}
        self._resource_version: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._watch: Optional[watch.Watch] = None
        self._stopped = False

    # =========================================================================
    # CACHE ACCESS
    # =========================================================================

    def list(self, namespace: Optional[str] = None) -> List[client.V1Service]:
        """Get cached services, optionally limited to one namespace."""
        if namespace is None:
            return list(self._services.values())
        return [
            service for (ns, _), service in self._services.items()
            if ns == namespace
        ]

    def apply_event(self, event_type: str, service: client.V1Service) -> None:
        """Apply one watch event to the cache and notify."""
        if self._stopped:
            return
        if service.metadata is not None and service.metadata.resource_version:
            self._resource_version = service.metadata.resource_version
        key = _service_key(service)
        if event_type == DELETED:
            self._services.pop(key, None)
        elif event_type in (ADDED, MODIFIED):
            self._services[key] = service
        else:
            logger.debug(f"[K8S:WATCH] Ignoring {event_type} event for {key}")
            return
        self.on_change(event_type, service)

    def replace(self, services: List[client.V1Service], resource_version: Optional[str]) -> None:
        """Replace the whole cache with the result of a list call."""
        if self._stopped:
            return
        self._services = {_service_key(s): s for s in services}
        self._resource_version = resource_version
        self.on_change(SYNCED, None)

    # =========================================================================
    # LIST / WATCH LOOP
    # =========================================================================

    def start(self) -> None:
        """Start the list-and-watch loop on the running event loop."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self._run())

    def stop(self) -> None:
        """Stop watching; no more notifications are delivered after this."""
        self._stopped = True
        if self._watch is not None:
            self._watch.stop()
        if self._task is not None:
            self._task.cancel()

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def _relist(self) -> None:
        result = await asyncio.to_thread(
            self.core_v1.list_service_for_all_namespaces,
            _request_timeout=self.timeout_seconds
        )
        resource_version = result.metadata.resource_version if result.metadata else None
        self.replace(result.items or [], resource_version)
        logger.debug(f"[K8S:WATCH] Listed {len(self._services)} services (rv={resource_version})")

    def _stream(self, resource_version: Optional[str]) -> None:
        """Blocking watch request; runs in the stream thread."""
        self._watch = self.watch_factory()
        kwargs = {
            "timeout_seconds": self.timeout_seconds,
            # The server ends the watch after timeout_seconds; this only
            # catches a connection that went dead
            "_request_timeout": self.timeout_seconds + 10,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        for event in self._watch.stream(self.core_v1.list_service_for_all_namespaces, **kwargs):
            if self._stopped:
                break
            self._loop.call_soon_threadsafe(self.apply_event, event["type"], event["object"])

    async def _watch_once(self, resource_version: Optional[str]) -> None:
        """
        Run one watch request in a daemon thread and wait for it.

        A default-executor thread would hold up loop shutdown until the
        request returned; a daemon thread is simply abandoned once stopped.
        """
        done = self._loop.create_future()

        def _deliver(error: Optional[BaseException]) -> None:
            if done.done():
                return
            if error is not None:
                done.set_exception(error)
            else:
                done.set_result(None)

        def _target() -> None:
            error = None
            try:
                self._stream(resource_version)
            except Exception as e:
                error = e
            try:
                self._loop.call_soon_threadsafe(_deliver, error)
            except RuntimeError:
                # The loop closed while the request was still open
                logger.debug("[K8S:WATCH] Event loop closed before the watch request ended")

        threading.Thread(target=_target, name="service-watch", daemon=True).start()
        await done

    async def _run(self) -> None:
        needs_list = True
        while not self._stopped:
            try:
                if needs_list:
                    await self._relist()
                    needs_list = False
                await self._watch_once(self._resource_version)
            except asyncio.CancelledError:
                raise
            except ApiException as e:
                # The watch client raises ERROR events (e.g. 410 Gone) as ApiException
                if e.status == 410:
                    logger.info("[K8S:WATCH] Resource version too old, relisting")
                    needs_list = True
                    continue
                logger.warning(f"[K8S:WATCH] Service watch failed: {e.status} {e.reason}")
                needs_list = True
                await asyncio.sleep(self.retry_interval)
            except Exception as e:
                if self._stopped:
                    break
                logger.warning(f"[K8S:WATCH] Service watch failed: {e}")
                needs_list = True
                await asyncio.sleep(self.retry_interval)
