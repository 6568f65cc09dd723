"""
Cluster Engine Module

Manages the lifecycle of a local single-node Kubernetes cluster:
- MinikubeBackend: start/stop/delete/reset through the minikube binary
- HyperkitBackend / LinuxMinikubeBackend: per-platform drivers
- NotImplementedBackend: unsupported platforms
- KubeClient: service listing and port forwarding while the cluster runs

Usage:
    from clusterdeck.services.engine import get_backend, STATE_CHANGED

    backend = get_backend(BackendConfig(version="v1.21.1"))
    backend.subscribe(STATE_CHANGED, on_state)
    await backend.start()
"""

from .base import KubernetesBackend
from .errors import (
    BackendError,
    DeleteFailure,
    InvalidStateError,
    NotImplementedBackendError,
    NotReadyTimeout,
    ProcessFailed,
    ResetFailure,
    StartFailure,
    StopFailure,
)
from .factory import BackendFactory, Platform, get_backend
from .minikube import HyperkitBackend, LinuxMinikubeBackend, MinikubeBackend
from .not_implemented import NotImplementedBackend
from .state import SERVICE_CHANGED, STATE_CHANGED, ClusterState, Operation

__all__ = [
    # Base class
    "KubernetesBackend",
    # Implementations
    "MinikubeBackend",
    "HyperkitBackend",
    "LinuxMinikubeBackend",
    "NotImplementedBackend",
    # Factory
    "BackendFactory",
    "Platform",
    "get_backend",
    # State
    "ClusterState",
    "Operation",
    "STATE_CHANGED",
    "SERVICE_CHANGED",
    # Errors
    "BackendError",
    "StartFailure",
    "StopFailure",
    "DeleteFailure",
    "ResetFailure",
    "InvalidStateError",
    "NotReadyTimeout",
    "NotImplementedBackendError",
    "ProcessFailed",
]
