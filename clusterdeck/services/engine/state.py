"""
Cluster State Enumeration

Defines the power states of the managed cluster and the events the engine
publishes to the front end.
"""

from enum import Enum


class ClusterState(str, Enum):
    """
    Power state of the Kubernetes cluster.

    Attributes:
        STOPPED: The engine is not running
        STARTING: The engine is attempting to start
        STARTED: The engine is started; workloads may not be ready yet
        STOPPING: The engine is attempting to stop
        ERROR: There is an error and we cannot recover automatically
    """

    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    ERROR = "error"

    @property
    def tears_down_client(self) -> bool:
        """Entering this state destroys the cluster access client."""
        return self in (ClusterState.STOPPING, ClusterState.STOPPED, ClusterState.ERROR)

    def __str__(self) -> str:
        return self.value


class Operation(str, Enum):
    """Lifecycle operations guarded by the operation lock."""

    START = "start"
    STOP = "stop"
    DELETE = "del"
    RESET = "reset"

    def __str__(self) -> str:
        return self.value


# Event names published to subscribers
STATE_CHANGED = "state-changed"
SERVICE_CHANGED = "service-changed"
