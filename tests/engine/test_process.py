"""
Unit tests for minikube process orchestration.

Tests:
- Exit classification (success, escalation, interrupt, failure)
- K8S_DOWNGRADE_UNSUPPORTED message rewriting
- Runner environment and executable resolution
- Streaming subprocess capture and interruption
"""

import asyncio
import os
import sys

import pytest

from clusterdeck.services.engine.errors import ProcessFailed
from clusterdeck.services.engine.process import (
    MinikubeRunner,
    Outcome,
    classify_result,
    customize_minikube_message,
    quote_if_necessary,
)
from clusterdeck.utils.async_subprocess import run_async, spawn_streaming

MARKER = "The 'hyperkit' driver requires elevated permissions."

DOWNGRADE_MESSAGE = """\
😄  [rancher-desktop] minikube v1.21.0 on Darwin 11.4
✨  Using the hyperkit driver based on existing profile

X Exiting due to K8S_DOWNGRADE_UNSUPPORTED: Unable to safely downgrade existing Kubernetes v1.21.1 cluster to v1.19.11
* Suggestion:

    1) Recreate the cluster with Kubernetes 1.19.11, by running:

    minikube delete -p rancher-desktop
    minikube start -p rancher-desktop --kubernetes-version=v1.19.11


    2) Create a second cluster with Kubernetes 1.19.11, by running:

    minikube start -p rancher-desktop2 --kubernetes-version=v1.19.11

"""


@pytest.mark.unit
class TestClassifyResult:
    """Test mapping exit status to outcomes."""

    def test_success(self, result_factory):
        assert classify_result(result_factory(0)) == Outcome.SUCCEEDED

    def test_escalation_requires_code_and_marker(self, result_factory):
        result = result_factory(80, stdout=f"something\n{MARKER}\n")

        assert classify_result(result, escalation_marker=MARKER) == Outcome.ESCALATION_REQUIRED
        assert classify_result(result) == Outcome.FAILED
        assert classify_result(result_factory(80), escalation_marker=MARKER) == Outcome.FAILED
        assert classify_result(result_factory(1, stdout=MARKER), escalation_marker=MARKER) == Outcome.FAILED

    def test_sigint_is_interrupted(self, result_factory):
        assert classify_result(result_factory(-2)) == Outcome.INTERRUPTED

    def test_other_signal_is_failure(self, result_factory):
        result = result_factory(-9)

        assert classify_result(result) == Outcome.FAILED
        assert result.exit_code is None
        assert result.signal_name == "SIGKILL"


@pytest.mark.unit
class TestCustomizeMinikubeMessage:
    """Test rewriting the downgrade error into shell steps."""

    def test_downgrade_message_is_rewritten(self):
        message = customize_minikube_message(
            DOWNGRADE_MESSAGE,
            data_dir="/Users/me/Library/Application Support/rancher-desktop",
            profile="rancher-desktop",
            driver="hyperkit"
        )

        assert message == (
            "Unable to safely downgrade existing Kubernetes v1.21.1 cluster to v1.19.11\n"
            "\n"
            "Suggested fix:\n"
            "\n"
            "Recreate the cluster with Kubernetes 1.19.11, by running:\n"
            "\n"
            'export MINIKUBE_HOME="/Users/me/Library/Application Support/rancher-desktop"\n'
            "\n"
            "minikube delete -p rancher-desktop\n"
            "\n"
            "minikube start -p rancher-desktop --kubernetes-version=v1.19.11 --driver=hyperkit\n"
        )

    def test_other_messages_are_unchanged(self):
        message = "X Exiting due to GUEST_PROVISION: Failed to start host\n"

        assert customize_minikube_message(message, "/data", "rancher-desktop", "hyperkit") == message

    def test_other_profile_is_not_rewritten(self):
        message = customize_minikube_message(DOWNGRADE_MESSAGE, "/data", "other-profile", "hyperkit")

        assert message == DOWNGRADE_MESSAGE

    def test_quote_if_necessary(self):
        assert quote_if_necessary("/no/spaces") == "/no/spaces"
        assert quote_if_necessary("/with space") == '"/with space"'


@pytest.mark.unit
class TestMinikubeRunner:
    """Test the environment and binary the runner hands to minikube."""

    def test_environment(self, test_settings):
        runner = MinikubeRunner(test_settings)

        env = runner.environment()

        assert env["MINIKUBE_HOME"] == str(test_settings.data_path)
        assert env["MINIKUBE_PROFILE"] == "rancher-desktop"
        assert env["PATH"].split(os.pathsep)[0] == str(test_settings.resources_path)

    def test_executable_prefers_bundled_binary(self, test_settings):
        test_settings.resources_path.mkdir(parents=True)
        name = "minikube.exe" if sys.platform == "win32" else "minikube"
        bundled = test_settings.resources_path / name
        bundled.write_text("")

        assert MinikubeRunner(test_settings).executable == str(bundled)

    def test_interrupt_without_process(self, test_settings):
        assert MinikubeRunner(test_settings).interrupt() is False

    @pytest.mark.asyncio
    async def test_exec_raises_on_failure(self, test_settings, result_factory):
        runner = MinikubeRunner(test_settings)

        async def failing_run(*args):
            return result_factory(3, stderr="boom", args=args)

        runner.run = failing_run

        with pytest.raises(ProcessFailed) as exc_info:
            await runner.ssh_sudo("systemctl", "stop", "kubelet.service")

        assert exc_info.value.result.args == ["ssh", "--", "sudo", "systemctl", "stop", "kubelet.service"]
        assert exc_info.value.result.stderr == "boom"


@pytest.mark.unit
class TestStreamingProcess:
    """Test subprocess capture using the running interpreter as the child."""

    @pytest.mark.asyncio
    async def test_stdout_and_stderr_are_captured_separately(self):
        lines = []
        code = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"

        process = await spawn_streaming([sys.executable, "-c", code], stdout_callback=lines.append)
        result = await process.wait(timeout=30)

        assert result.returncode == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert lines == ["out"]

    @pytest.mark.asyncio
    async def test_run_async_check(self):
        with pytest.raises(RuntimeError):
            await run_async([sys.executable, "-c", "raise SystemExit(1)"], timeout=30, check=True)

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    async def test_interrupt_reports_sigint(self):
        code = "import sys, time; print('ready', flush=True); time.sleep(30)"
        ready = []
        process = await spawn_streaming([sys.executable, "-c", code], stdout_callback=ready.append)

        for _ in range(300):
            if ready:
                break
            await asyncio.sleep(0.01)
        process.interrupt()
        result = await process.wait(timeout=30)

        # The child dies of KeyboardInterrupt, never exiting cleanly
        assert result.returncode != 0
        assert not process.running
