"""
Engine errors.

Lifecycle failures carry the operation context, the exit code (or signal) of
the provisioning binary, and its diagnostic output so the front end can show
actionable guidance.
"""

from typing import Optional


class BackendError(Exception):
    """Base class for lifecycle failures."""

    context = "managing the cluster"

    def __init__(
        self,
        message: str = "",
        error_code: Optional[int] = None,
        signal: Optional[str] = None,
        context: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.signal = signal
        if context is not None:
            self.context = context

    def __str__(self) -> str:
        status = []
        if self.error_code is not None:
            status.append(f"exit code {self.error_code}")
        if self.signal:
            status.append(f"signal {self.signal}")
        prefix = f"Error {self.context}"
        if status:
            prefix += f" ({', '.join(status)})"
        return f"{prefix}: {self.message}" if self.message else prefix


class StartFailure(BackendError):
    context = "starting minikube"


class StopFailure(BackendError):
    context = "stopping minikube"


class DeleteFailure(BackendError):
    context = "deleting minikube"


class ResetFailure(BackendError):
    context = "resetting minikube"


class InvalidStateError(BackendError):
    """The operation is not allowed in the current cluster state."""


class NotReadyTimeout(BackendError):
    """No ready pod appeared for an endpoint within the configured timeout."""

    context = "waiting for a ready pod"


class NotImplementedBackendError(NotImplementedError):
    """The host platform has no supported backend."""


class ProcessFailed(RuntimeError):
    """
    A provisioning binary invocation exited unsuccessfully.

    Raised by the process orchestrator; the lifecycle controller converts it
    into the operation-specific failure.
    """

    def __init__(self, result):
        self.result = result
        status = result.signal_name or f"exit code {result.returncode}"
        super().__init__(f"Command {' '.join(result.args)} failed ({status}): {result.stderr}")
