"""
Minikube Process Orchestration

Runs the bundled minikube binary with an isolated MINIKUBE_HOME, captures
its output, and classifies how it exited.
"""

import logging
import os
import re
import shutil
import signal
import sys
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from ...config import Settings, get_settings
from ...utils.async_subprocess import StreamingProcess, SubprocessResult, spawn_streaming
from .errors import ProcessFailed

logger = logging.getLogger(__name__)

# minikube exits with this code when a driver needs root (DRV_NEEDS_ROOT)
ELEVATION_EXIT_CODE = 80


class Outcome(str, Enum):
    """How a provisioning binary invocation ended."""

    SUCCEEDED = "succeeded"
    ESCALATION_REQUIRED = "escalation_required"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


def classify_result(
    result: SubprocessResult,
    escalation_marker: Optional[str] = None,
    escalation_code: int = ELEVATION_EXIT_CODE
) -> Outcome:
    """
    Classify a finished process.

    Args:
        result: The finished process
        escalation_marker: stdout text that, combined with escalation_code,
            means the binary needs elevated permissions; None disables the check
        escalation_code: Exit code that accompanies the marker
    """
    if result.returncode == 0:
        return Outcome.SUCCEEDED
    if (escalation_marker and result.exit_code == escalation_code
            and escalation_marker in result.stdout):
        return Outcome.ESCALATION_REQUIRED
    if result.signal == signal.SIGINT:
        return Outcome.INTERRUPTED
    return Outcome.FAILED


# =============================================================================
# ERROR MESSAGE REWRITING
# =============================================================================

def quote_if_necessary(s: str) -> str:
    """Wrap paths with whitespace in double quotes, for human consumption."""
    return f'"{s}"' if re.search(r"\s", s) else s


def _downgrade_pattern(profile: str) -> "re.Pattern":
    profile = re.escape(profile)
    return re.compile(
        r"X Exiting due to K8S_DOWNGRADE_UNSUPPORTED:\s*"
        r"(?P<reason>Unable to safely downgrade .*?)\s+"
        r"\*\s*Suggestion:\s+1\)\s*"
        r"(?P<recreate>Recreate the cluster with.*? by running:)\s+"
        rf"(?P<delete>minikube delete -p {profile})\s+"
        rf"(?P<start>minikube start -p {profile} --kubernetes-version=.*?)\n",
        re.DOTALL
    )


def customize_minikube_message(message: str, data_dir: str, profile: str, driver: str) -> str:
    """
    Rewrite minikube's "cannot downgrade" error into steps the user can
    paste into a shell; any other message is returned unchanged.

    The delete/start commands minikube suggests would act on the user's
    default MINIKUBE_HOME, so the rewrite adds the export line for ours and
    the driver flag.
    """
    match = _downgrade_pattern(profile).search(message)
    if not match:
        return message

    return (
        f"{match.group('reason')}\n"
        "\n"
        "Suggested fix:\n"
        "\n"
        f"{match.group('recreate')}\n"
        "\n"
        f"export MINIKUBE_HOME={quote_if_necessary(data_dir)}\n"
        "\n"
        f"{match.group('delete')}\n"
        "\n"
        f"{match.group('start')} --driver={driver}\n"
    )


# =============================================================================
# RUNNER
# =============================================================================

class MinikubeRunner:
    """
    Spawns minikube for one backend.

    Only one invocation is tracked as current; that is the one stop() can
    interrupt.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.current: Optional[StreamingProcess] = None

    @property
    def data_path(self) -> Path:
        return self.settings.data_path

    @property
    def profile(self) -> str:
        return self.settings.minikube_profile

    @property
    def executable(self) -> str:
        """Bundled binary if present, else whatever PATH provides."""
        name = self.settings.minikube_binary
        if sys.platform == "win32" and not name.endswith(".exe"):
            name += ".exe"
        bundled = self.settings.resources_path / name
        if bundled.exists():
            return str(bundled)
        return shutil.which(name) or name

    def environment(self) -> Dict[str, str]:
        """Environment for every minikube invocation."""
        env = dict(os.environ)
        env["MINIKUBE_HOME"] = str(self.data_path)
        env["MINIKUBE_PROFILE"] = self.profile
        path = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        path.insert(0, str(self.settings.resources_path))
        env["PATH"] = os.pathsep.join(path)
        return env

    async def spawn(self, *args: str) -> StreamingProcess:
        """Start minikube and make it the current (interruptible) process."""
        cmd = [self.executable, *args]
        logger.info(f"[MINIKUBE] Running: minikube {' '.join(args)}")
        process = await spawn_streaming(
            cmd,
            env=self.environment(),
            stdout_callback=lambda line: logger.debug(f"[MINIKUBE] {line}"),
            stderr_callback=lambda line: logger.warning(f"[MINIKUBE] {line}"),
        )
        self.current = process
        return process

    async def run(self, *args: str) -> SubprocessResult:
        """Run minikube to completion; never raises on exit status."""
        process = await self.spawn(*args)
        try:
            result = await process.wait()
        finally:
            if self.current is process:
                self.current = None
        logger.debug(f"[MINIKUBE] minikube {args[0] if args else ''} exited: {result.returncode}")
        return result

    async def exec(self, *args: str) -> SubprocessResult:
        """
        Run minikube to completion.

        Raises:
            ProcessFailed: If minikube exits unsuccessfully
        """
        result = await self.run(*args)
        if not result.success:
            raise ProcessFailed(result)
        return result

    async def ssh_sudo(self, *command: str) -> SubprocessResult:
        """Run a command as root inside the cluster VM."""
        return await self.exec("ssh", "--", "sudo", *command)

    def interrupt(self) -> bool:
        """Send SIGINT to the current process, if any."""
        if self.current is None or not self.current.running:
            return False
        logger.info(f"[MINIKUBE] Interrupting process {self.current.pid}")
        self.current.interrupt()
        return True
