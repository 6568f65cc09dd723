"""
Kubernetes Access Module

Talks to the cluster once it is running:
- KubeClient: service listing and local port forwarding
- ServiceWatchCache: list-and-watch cache of Service objects
- ForwardingTable / ForwardingServer: desired set of local listeners
- PortForwardRelay: pipes one connection to a pod over the port-forward API

These are used internally by the lifecycle backends.
"""

from .client import KubeClient
from .forwarding import (
    ForwardKey,
    ForwardingServer,
    ForwardingTable,
    PodReference,
    PortForwardRelay,
)
from .watch import ServiceWatchCache

__all__ = [
    "KubeClient",
    "ForwardKey",
    "ForwardingServer",
    "ForwardingTable",
    "PodReference",
    "PortForwardRelay",
    "ServiceWatchCache",
]
