"""
Abstract Kubernetes Backend

Defines the common interface that every per-platform lifecycle controller
implements. The front end only ever talks to this interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ...schemas import BackendConfig, ServiceEntry
from .events import EventRegistry
from .state import ClusterState


class KubernetesBackend(ABC):
    """
    Abstract base class for cluster lifecycle controllers.

    Events (see subscribe()):
    - "state-changed": payload is the new ClusterState
    - "service-changed": payload is the List[ServiceEntry] of the cluster
    """

    def __init__(self, cfg: BackendConfig):
        self.cfg = cfg
        self.events = EventRegistry()

    def subscribe(self, event: str, callback: Callable) -> None:
        """Subscribe to "state-changed" or "service-changed"."""
        self.events.subscribe(event, callback)

    def unsubscribe(self, event: str, callback: Callable) -> None:
        self.events.unsubscribe(event, callback)

    def on_settings_update(self, cfg: BackendConfig) -> None:
        """Take new settings; they apply from the next start."""
        self.cfg = cfg

    @property
    @abstractmethod
    def state(self) -> ClusterState:
        """Current power state of the cluster."""
        pass

    @property
    @abstractmethod
    def version(self) -> Optional[str]:
        """The Kubernetes version the cluster was last started with."""
        pass

    @abstractmethod
    async def available_versions(self) -> List[str]:
        """Versions that can be installed, in the form v1.2.3."""
        pass

    @abstractmethod
    async def get_cpus(self) -> int:
        """The number of CPUs in the running VM, or 0 if it is not running."""
        pass

    @abstractmethod
    async def get_memory(self) -> int:
        """The amount of memory in the VM, in MiB, or 0 if it is not running."""
        pass

    # =========================================================================
    # CLUSTER LIFECYCLE
    # =========================================================================

    @abstractmethod
    async def start(self) -> None:
        """Start the Kubernetes cluster."""
        pass

    @abstractmethod
    async def stop(self) -> int:
        """Stop the Kubernetes cluster, returning the exit code."""
        pass

    @abstractmethod
    async def delete(self) -> int:
        """Delete the Kubernetes cluster, returning the exit code."""
        pass

    @abstractmethod
    async def reset(self) -> None:
        """Reset the Kubernetes cluster, removing all workloads."""
        pass

    @abstractmethod
    async def factory_reset(self) -> None:
        """
        Reset the cluster, completely deleting any user configuration.  This
        does not automatically restart the cluster.
        """
        pass

    @abstractmethod
    async def requires_restart_reasons(self) -> Dict[str, List[Any]]:
        """
        For every reason the cluster needs a restart to apply the current
        settings, map the reason to [existing value, desired value].
        Reasons that do not apply are omitted.
        """
        pass

    # =========================================================================
    # SERVICES
    # =========================================================================

    @abstractmethod
    def list_services(self, namespace: Optional[str] = None) -> List[ServiceEntry]:
        """
        Fetch the list of services currently known to Kubernetes.

        Args:
            namespace: The namespace containing services; None returns
                services across all namespaces
        """
        pass

    @abstractmethod
    async def forward_port(self, namespace: str, service: str, port: int) -> Optional[int]:
        """
        Forward a single service port, returning the resulting local port.

        Args:
            namespace: The namespace containing the service to forward
            service: The name of the service to forward
            port: The internal port number of the service to forward

        Returns:
            The port listening on localhost, or None if unavailable
        """
        pass

    @abstractmethod
    async def cancel_forward(self, namespace: str, service: str, port: int) -> None:
        """Cancel an existing port forwarding."""
        pass
