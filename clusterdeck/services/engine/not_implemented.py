"""
Backend for platforms without a supported VM driver.

Every operation raises NotImplementedBackendError; only the state and
subscription surface work, so a front end can still render.
"""

from typing import Any, Dict, List, Optional

from ...schemas import ServiceEntry
from .base import KubernetesBackend
from .errors import NotImplementedBackendError
from .state import ClusterState


class NotImplementedBackend(KubernetesBackend):

    def _fail(self):
        raise NotImplementedBackendError("Kubernetes is not supported on this platform")

    @property
    def state(self) -> ClusterState:
        return ClusterState.ERROR

    @property
    def version(self) -> Optional[str]:
        return None

    async def available_versions(self) -> List[str]:
        self._fail()

    async def get_cpus(self) -> int:
        self._fail()

    async def get_memory(self) -> int:
        self._fail()

    async def start(self) -> None:
        self._fail()

    async def stop(self) -> int:
        self._fail()

    async def delete(self) -> int:
        self._fail()

    async def reset(self) -> None:
        self._fail()

    async def factory_reset(self) -> None:
        self._fail()

    async def requires_restart_reasons(self) -> Dict[str, List[Any]]:
        self._fail()

    def list_services(self, namespace: Optional[str] = None) -> List[ServiceEntry]:
        self._fail()

    async def forward_port(self, namespace: str, service: str, port: int) -> Optional[int]:
        self._fail()

    async def cancel_forward(self, namespace: str, service: str, port: int) -> None:
        self._fail()
