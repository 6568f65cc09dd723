"""
Test configuration and fixtures for pytest.

Nothing here talks to a real cluster or runs minikube: the process layer is
replaced by a scripted runner, the cluster access client by a fake, and the
kubernetes API by mocks.
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

# Add the project root to sys.path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any settings are read
    os.environ["LOG_LEVEL"] = "DEBUG"
    os.environ["MINIKUBE_PROFILE"] = "rancher-desktop"
    os.environ["POD_POLL_INTERVAL"] = "0.01"

    from clusterdeck.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising the cluster access layer")


# =============================================================================
# FAKES
# =============================================================================

def make_result(returncode: Optional[int] = 0, stdout: str = "", stderr: str = "", args=None):
    from clusterdeck.utils.async_subprocess import SubprocessResult
    return SubprocessResult(returncode=returncode, stdout=stdout, stderr=stderr, args=list(args or []))


class FakeProcess:
    """
    Stands in for a StreamingProcess.  With gated=True, wait() blocks until
    release() or interrupt() is called.
    """

    def __init__(self, result, gated: bool = False):
        self.result = result
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()
        self.interrupted = False
        self.pid = 4242

    @property
    def running(self) -> bool:
        return not self.gate.is_set()

    def release(self) -> None:
        self.gate.set()

    def interrupt(self) -> None:
        self.interrupted = True
        self.result = make_result(-2, stderr="interrupted", args=self.result.args)
        self.gate.set()

    async def wait(self, timeout=None):
        await self.gate.wait()
        return self.result


class FakeRunner:
    """
    Scripted replacement for MinikubeRunner.

    - start_processes: FakeProcess objects handed out by spawn(), in order
    - run_results: SubprocessResult per minikube subcommand for run()
    - ssh_failure: ProcessFailed raised by ssh_sudo() for a matching command
    """

    def __init__(self, data_path: Path):
        self.data_path = data_path
        self.current = None
        self.calls: List[tuple] = []
        self.ssh_calls: List[tuple] = []
        self.start_processes: List[FakeProcess] = []
        self.run_results = {}
        self.ssh_failure = None

    async def spawn(self, *args):
        self.calls.append(args)
        if self.start_processes:
            process = self.start_processes.pop(0)
        else:
            process = FakeProcess(make_result(0, args=args))
        self.current = process
        return process

    async def run(self, *args):
        self.calls.append(args)
        return self.run_results.get(args[0], make_result(0, args=args))

    async def ssh_sudo(self, *command):
        from clusterdeck.services.engine.errors import ProcessFailed
        self.ssh_calls.append(command)
        if self.ssh_failure is not None and self.ssh_failure[0] == command:
            raise ProcessFailed(self.ssh_failure[1])
        return make_result(0, args=command)

    def interrupt(self) -> bool:
        if self.current is None or not self.current.running:
            return False
        self.current.interrupt()
        return True

    def subcommands(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeKubeClient:
    """Records what the backend does with its cluster access client."""

    def __init__(self):
        self.destroyed = False
        self.callbacks = {}
        self.forward_port = AsyncMock(return_value=54321)
        self.cancel_forward_port = AsyncMock()
        self.list_services = Mock(return_value=[])

    def subscribe(self, event, callback):
        self.callbacks.setdefault(event, []).append(callback)

    def destroy(self):
        self.destroyed = True


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing the data directory at a temporary path."""
    from clusterdeck.config import Settings
    return Settings(
        data_dir=str(tmp_path / "data"),
        resources_dir=str(tmp_path / "resources"),
        minikube_profile="rancher-desktop",
        pod_poll_interval=0.01,
    )


@pytest.fixture
def backend_config():
    from clusterdeck.schemas import BackendConfig
    return BackendConfig(version="v1.21.1")


@pytest.fixture
def fake_runner(test_settings):
    return FakeRunner(test_settings.data_path)


@pytest.fixture
def kube_clients():
    """Every FakeKubeClient created by the backend under test, in order."""
    return []


@pytest.fixture
def make_backend(test_settings, backend_config, fake_runner, kube_clients):
    """Build a backend wired to the fake runner and fake clients."""
    from clusterdeck.services.engine.minikube import LinuxMinikubeBackend

    def _make(cls=LinuxMinikubeBackend, cfg=None):
        def client_factory():
            kube_client = FakeKubeClient()
            kube_clients.append(kube_client)
            return kube_client

        return cls(
            cfg or backend_config,
            settings=test_settings,
            runner=fake_runner,
            client_factory=client_factory
        )

    return _make


@pytest.fixture
def result_factory():
    """Build SubprocessResult objects."""
    return make_result


@pytest.fixture
def process_factory():
    """Build FakeProcess objects: process_factory(returncode, stdout=..., gated=...)."""
    def _make(returncode=0, stdout="", stderr="", gated=False):
        return FakeProcess(make_result(returncode, stdout=stdout, stderr=stderr, args=["start"]), gated=gated)
    return _make
