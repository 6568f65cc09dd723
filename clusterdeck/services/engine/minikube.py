"""
Minikube Backend

Lifecycle controller for a minikube-provisioned k3s cluster. One instance
manages one cluster profile:

- start/stop/delete/reset are serialized by an operation lock; stop() may
  interrupt an in-flight start
- every state change goes through _transition(), which notifies
  "state-changed" subscribers before tearing down the Kubernetes client
- a KubeClient exists only while the cluster is started

Platform subclasses pick the VM driver and whether the driver may need
elevated permissions.
"""

import asyncio
import logging
import shlex
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ...config import Settings, get_settings
from ...schemas import BackendConfig, ServiceEntry
from ...utils.async_fileio import read_json_async, rmtree_async, symlink_if_missing_async
from ...utils.async_subprocess import run_async
from .base import KubernetesBackend
from .errors import (
    DeleteFailure,
    InvalidStateError,
    ProcessFailed,
    ResetFailure,
    StartFailure,
    StopFailure,
)
from .kubernetes.client import KubeClient
from .process import MinikubeRunner, Outcome, classify_result, customize_minikube_message
from .state import SERVICE_CHANGED, STATE_CHANGED, ClusterState, Operation

logger = logging.getLogger(__name__)

# Minikube's own defaults; flags are only passed when settings differ
DEFAULT_MEMORY_GB = 2
DEFAULT_CPUS = 2

# Wipes workloads in place by restarting k3s with an empty datastore
RESET_COMMANDS = [
    ["systemctl", "stop", "kubelet.service"],
    ["rm", "-rf", "/var/lib/k3s/server/db"],
    ["systemctl", "start", "kubelet.service"],
    ["systemctl", "is-active", "--wait", "kubelet.service"],
]


class MinikubeBackend(KubernetesBackend):
    """
    Kubernetes backend using minikube.

    Subclasses set:
    - driver: value for minikube's --driver flag
    - escalation_marker: stdout text meaning the driver needs root; None
      when privilege escalation is meaningless on the platform
    - link_data_directory: expose the hidden .minikube directory
    """

    driver: str = "kvm2"
    escalation_marker: Optional[str] = None
    link_data_directory: bool = False

    def __init__(
        self,
        cfg: BackendConfig,
        settings: Optional[Settings] = None,
        runner: Optional[MinikubeRunner] = None,
        client_factory: Optional[Callable[[], KubeClient]] = None
    ):
        super().__init__(cfg)
        self.settings = settings or get_settings()
        self.runner = runner or MinikubeRunner(self.settings)
        self._client_factory = client_factory or (lambda: KubeClient(self.settings))

        self._state = ClusterState.STOPPED
        self._client: Optional[KubeClient] = None
        self._version: Optional[str] = None

        # At most one of start/stop/del/reset runs at a time
        self._lock = asyncio.Lock()
        self._current_operation: Optional[Operation] = None

        logger.info(f"[MINIKUBE] Backend initialized (driver: {self.driver}, profile: {self.profile})")

    @property
    def profile(self) -> str:
        return self.settings.minikube_profile

    @property
    def state(self) -> ClusterState:
        return self._state

    @property
    def client(self) -> Optional[KubeClient]:
        return self._client

    @property
    def current_operation(self) -> Optional[Operation]:
        return self._current_operation

    @property
    def version(self) -> Optional[str]:
        return self._version

    async def available_versions(self) -> List[str]:
        return self.settings.available_versions

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _transition(self, state: ClusterState) -> ClusterState:
        """
        The only place the state changes. Subscribers see the new state
        while the old client is still alive; it is torn down afterwards.
        """
        previous, self._state = self._state, state
        logger.info(f"[MINIKUBE] State: {previous} -> {state}")
        self.events.emit(STATE_CHANGED, state)
        if state.tears_down_client:
            self._destroy_client()
        return state

    def _destroy_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.destroy()

    def _create_client(self) -> None:
        client = self._client_factory()
        client.subscribe(SERVICE_CHANGED, lambda services: self.events.emit(SERVICE_CHANGED, services))
        self._client = client

    @asynccontextmanager
    async def _operation(self, operation: Operation):
        """Hold the operation lock for the duration of one operation."""
        if self._lock.locked():
            logger.debug(f"[MINIKUBE] {operation} waiting for {self._current_operation} to finish")
        async with self._lock:
            self._current_operation = operation
            try:
                yield
            finally:
                self._current_operation = None

    def _start_args(self) -> List[str]:
        args = [
            "start",
            "-b", self.cfg.bootstrapper,
            "-p", self.profile,
            "--driver", self.driver,
            "--container-runtime", self.cfg.container_runtime,
            "--interactive=false",
            f"--kubernetes-version={self.cfg.version}",
        ]
        if self.cfg.memory_in_gb != DEFAULT_MEMORY_GB:
            args.append(f"--memory={self.cfg.memory_in_gb}g")
        if self.cfg.number_cpus != DEFAULT_CPUS:
            args.append(f"--cpus={self.cfg.number_cpus}")
        if self.cfg.disk_size_gb:
            args.append(f"--disk-size={self.cfg.disk_size_gb}g")
        return args

    @property
    def _config_path(self) -> Path:
        return self.runner.data_path / ".minikube" / "profiles" / self.profile / "config.json"

    async def _minikube_config(self) -> Optional[Dict[str, Any]]:
        """
        Read the profile's config.json.

        Keys of interest: CPUs, Memory (MiB), DiskSize, Driver, Bootstrapper,
        KubernetesConfig.{KubernetesVersion,ContainerRuntime}.

        Returns:
            The parsed file, or None if the cluster is not running or the
            file does not exist
        """
        if self._state != ClusterState.STARTED:
            return None
        return await read_json_async(str(self._config_path))

    async def escalate_privileges(self) -> None:
        """Grant the VM driver the permissions it asked for."""
        raise NotImplementedError(f"Driver {self.driver} does not support privilege escalation")

    # =========================================================================
    # CLUSTER LIFECYCLE
    # =========================================================================

    async def start(self, nested: bool = False) -> None:
        """
        Start the Kubernetes cluster.

        Args:
            nested: Internal use only; the retry after privilege escalation,
                which runs under the outer start's lock

        Raises:
            InvalidStateError: If the cluster is not stopped
            StartFailure: If minikube fails
        """
        if nested:
            await self._start(nested=True)
            return
        async with self._operation(Operation.START):
            await self._start(nested=False)

    async def _start(self, nested: bool) -> None:
        if not nested and self._state != ClusterState.STOPPED:
            raise InvalidStateError(
                f"Attempting to start unstopped Kubernetes cluster: {self._state}",
                context=StartFailure.context
            )
        self._transition(ClusterState.STARTING)
        self._version = self.cfg.version

        try:
            process = await self.runner.spawn(*self._start_args())
        except OSError as e:
            # Binary missing or not executable
            self._transition(ClusterState.ERROR)
            raise StartFailure(str(e)) from e
        if self.link_data_directory:
            # Make the hidden directory visible to users browsing their library
            data_path = self.runner.data_path
            await symlink_if_missing_async(str(data_path / ".minikube"), str(data_path / "minikube"))
        try:
            result = await process.wait()
        finally:
            if self.runner.current is process:
                self.runner.current = None

        # When nested we do not want to keep going down the rabbit hole
        marker = None if nested else self.escalation_marker
        outcome = classify_result(result, escalation_marker=marker)

        if outcome == Outcome.ESCALATION_REQUIRED:
            logger.info(f"[MINIKUBE] The {self.driver} driver requires elevated permissions")
            try:
                await self.escalate_privileges()
            except (ProcessFailed, OSError) as e:
                self._transition(ClusterState.ERROR)
                raise StartFailure(str(e), error_code=result.exit_code) from e
            await self.start(nested=True)
            return

        if outcome == Outcome.INTERRUPTED:
            # The user stopped the cluster before it finished starting
            logger.info("[MINIKUBE] Start was interrupted")
            self._transition(ClusterState.STOPPED)
            return

        if outcome == Outcome.FAILED:
            self._transition(ClusterState.ERROR)
            message = customize_minikube_message(
                result.stderr,
                data_dir=str(self.runner.data_path),
                profile=self.profile,
                driver=self.driver
            )
            raise StartFailure(message, error_code=result.exit_code, signal=result.signal_name)

        self._transition(ClusterState.STARTED)
        self._create_client()
        logger.info(f"[MINIKUBE] ✅ Kubernetes {self._version} started")

    async def stop(self) -> int:
        """
        Stop the Kubernetes cluster, interrupting a start in progress.

        Returns:
            0 on success

        Raises:
            StopFailure: If minikube fails to stop the cluster
        """
        if self._current_operation == Operation.START:
            self.runner.interrupt()

        async with self._operation(Operation.STOP):
            if self._state == ClusterState.STOPPED:
                return 0

            self._transition(ClusterState.STOPPING)
            result = await self.runner.run("stop", "-p", self.profile)

            # A stop that was killed has no exit code; the VM is gone either way
            if result.success or result.exit_code is None:
                self._transition(ClusterState.STOPPED)
                return 0

            self._transition(ClusterState.ERROR)
            raise StopFailure(result.stderr, error_code=result.exit_code, signal=result.signal_name)

    async def delete(self) -> int:
        """
        Delete the (stopped) Kubernetes cluster.

        Returns:
            0 on success

        Raises:
            InvalidStateError: If the cluster is not stopped
            DeleteFailure: If minikube fails
        """
        async with self._operation(Operation.DELETE):
            if self._state != ClusterState.STOPPED:
                raise InvalidStateError(
                    f"Cannot delete a running cluster: {self._state}",
                    error_code=1,
                    context=DeleteFailure.context
                )

            result = await self.runner.run("delete", "-p", self.profile)
            if not result.success:
                raise DeleteFailure(result.stderr, error_code=result.exit_code, signal=result.signal_name)
            return result.returncode

    async def reset(self) -> None:
        """
        Do a fast reset of Kubernetes: delete the workloads only, reusing the
        same k3s deployment.  This cannot change the Kubernetes version.

        Raises:
            ResetFailure: If any remote command fails
        """
        async with self._operation(Operation.RESET):
            if self._state != ClusterState.STARTED:
                return

            self._transition(ClusterState.STARTING)
            self._destroy_client()
            try:
                for command in RESET_COMMANDS:
                    await self.runner.ssh_sudo(*command)
            except ProcessFailed as e:
                # The cluster is probably not running correctly anymore
                self._transition(ClusterState.ERROR)
                raise ResetFailure(
                    e.result.stderr,
                    error_code=e.result.exit_code,
                    signal=e.result.signal_name
                ) from e

            # Restore the state only if nothing else moved it meanwhile
            if self._state != ClusterState.STARTING:
                logger.warning(f"[MINIKUBE] Reset raced with a transition to {self._state}; not restarting client")
                return
            self._transition(ClusterState.STARTED)
            self._create_client()
            logger.info("[MINIKUBE] ✅ Kubernetes reset")

    async def factory_reset(self) -> None:
        """
        Stop and delete the cluster, then remove all of its data.  This does
        not restart the cluster.
        """
        if self._state != ClusterState.STOPPED:
            await self.stop()
        await self.delete()
        await rmtree_async(str(self.runner.data_path))
        logger.info(f"[MINIKUBE] Removed cluster data: {self.runner.data_path}")

    async def requires_restart_reasons(self) -> Dict[str, List[Any]]:
        config = await self._minikube_config()
        if not config:
            return {}  # No need to restart if nothing exists

        results: Dict[str, List[Any]] = {}

        def cmp(key: str, actual: Any, desired: Any) -> None:
            if actual != desired:
                results[key] = [actual, desired]

        memory_gb = config.get("Memory", 0) / 1024
        if float(memory_gb).is_integer():
            memory_gb = int(memory_gb)

        cmp("cpu", config.get("CPUs"), self.cfg.number_cpus)
        cmp("memory", memory_gb, self.cfg.memory_in_gb)
        cmp("bootstrapper", config.get("Bootstrapper"), self.cfg.bootstrapper)
        return results

    async def get_cpus(self) -> int:
        config = await self._minikube_config()
        return (config or {}).get("CPUs") or 0

    async def get_memory(self) -> int:
        config = await self._minikube_config()
        return (config or {}).get("Memory") or 0

    # =========================================================================
    # SERVICES
    # =========================================================================

    def list_services(self, namespace: Optional[str] = None) -> List[ServiceEntry]:
        if self._client is None:
            return []
        return self._client.list_services(namespace)

    async def forward_port(self, namespace: str, service: str, port: int) -> Optional[int]:
        if self._client is None:
            return None
        return await self._client.forward_port(namespace, service, port)

    async def cancel_forward(self, namespace: str, service: str, port: int) -> None:
        if self._client is None:
            return
        await self._client.cancel_forward_port(namespace, service, port)


class HyperkitBackend(MinikubeBackend):
    """macOS: minikube on hyperkit, whose driver must be setuid root."""

    driver = "hyperkit"
    escalation_marker = "The 'hyperkit' driver requires elevated permissions."
    link_data_directory = True

    @property
    def driver_path(self) -> Path:
        return self.runner.data_path / ".minikube" / "bin" / "docker-machine-driver-hyperkit"

    async def escalate_privileges(self) -> None:
        """
        Make the hyperkit docker-machine driver setuid root, prompting the
        user for their password.

        Raises:
            ProcessFailed: If the user cancels or the command fails
        """
        path = shlex.quote(str(self.driver_path))
        command = f"chown root:wheel {path} && chmod u+s {path}"
        # AppleScript string literal
        literal = command.replace("\\", "\\\\").replace('"', '\\"')
        script = (
            f'do shell script "{literal}" with administrator privileges '
            f'with prompt "Rancher Desktop needs to set permissions on the hyperkit driver."'
        )
        logger.info(f"[MINIKUBE] Requesting elevated permissions for {self.driver_path}")
        result = await run_async(["osascript", "-e", script])
        if not result.success:
            raise ProcessFailed(result)


class LinuxMinikubeBackend(MinikubeBackend):
    """Linux: minikube on the kvm2 driver; no privilege escalation."""

    driver = "kvm2"

