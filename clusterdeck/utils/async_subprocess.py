"""
Async subprocess utilities
Wraps asyncio subprocesses so that long-running commands can be streamed,
interrupted, and inspected after exit.
"""
import asyncio
import signal
from typing import Optional, List, Callable
from dataclasses import dataclass


@dataclass
class SubprocessResult:
    """Result from subprocess execution (mirrors subprocess.CompletedProcess)"""
    returncode: Optional[int]
    stdout: str
    stderr: str
    args: List[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def signal(self) -> Optional[int]:
        """Signal number that terminated the process, if any (POSIX only)."""
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def signal_name(self) -> Optional[str]:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)

    @property
    def exit_code(self) -> Optional[int]:
        """Exit status for a normal exit; None when killed by a signal."""
        if self.signal is not None:
            return None
        return self.returncode


async def _read_stream(stream, callback, lines_list):
    """Read stream line by line"""
    while True:
        line = await stream.readline()
        if not line:
            break
        line_text = line.decode('utf-8', errors='replace')
        lines_list.append(line_text)
        if callback:
            if asyncio.iscoroutinefunction(callback):
                await callback(line_text.rstrip())
            else:
                callback(line_text.rstrip())


class StreamingProcess:
    """
    A running subprocess whose stdout and stderr are captured separately
    while being handed to optional per-line callbacks.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        args: List[str],
        stdout_callback: Optional[Callable] = None,
        stderr_callback: Optional[Callable] = None
    ):
        self.process = process
        self.args = args
        self._stdout_lines: List[str] = []
        self._stderr_lines: List[str] = []
        self._readers = asyncio.gather(
            _read_stream(process.stdout, stdout_callback, self._stdout_lines),
            _read_stream(process.stderr, stderr_callback, self._stderr_lines),
        )

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def send_signal(self, sig: int) -> None:
        if self.running:
            self.process.send_signal(sig)

    def interrupt(self) -> None:
        """Ask the process to stop, as if the user pressed Ctrl-C."""
        self.send_signal(signal.SIGINT)

    def kill(self) -> None:
        if self.running:
            self.process.kill()

    async def wait(self, timeout: Optional[float] = None) -> SubprocessResult:
        """
        Wait for the process to exit and both streams to drain.

        Raises:
            asyncio.TimeoutError: If timeout is exceeded (the process is killed)
        """
        try:
            await asyncio.wait_for(
                asyncio.gather(self._readers, self.process.wait()),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            self.kill()
            await self.process.wait()
            raise

        return SubprocessResult(
            returncode=self.process.returncode,
            stdout=''.join(self._stdout_lines),
            stderr=''.join(self._stderr_lines),
            args=self.args
        )


async def spawn_streaming(
    cmd: List[str],
    cwd: Optional[str] = None,
    env: Optional[dict] = None,
    stdout_callback: Optional[Callable] = None,
    stderr_callback: Optional[Callable] = None
) -> StreamingProcess:
    """
    Start a subprocess with real-time output streaming

    Args:
        cmd: Command and arguments
        cwd: Working directory
        env: Environment variables
        stdout_callback: Function to call with each stdout line
        stderr_callback: Function to call with each stderr line

    Returns:
        StreamingProcess; await its wait() for the SubprocessResult
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env
    )
    return StreamingProcess(process, cmd, stdout_callback, stderr_callback)


async def run_async(
    cmd: List[str],
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
    env: Optional[dict] = None,
    check: bool = False
) -> SubprocessResult:
    """
    Async replacement for subprocess.run()

    Args:
        cmd: Command and arguments as list
        timeout: Optional timeout in seconds
        cwd: Working directory
        env: Environment variables
        check: Raise exception on non-zero exit code

    Returns:
        SubprocessResult with returncode, stdout, stderr

    Raises:
        asyncio.TimeoutError: If timeout is exceeded
        RuntimeError: If check=True and returncode != 0
    """
    process = await spawn_streaming(cmd, cwd=cwd, env=env)
    result = await process.wait(timeout=timeout)

    if check and not result.success:
        raise RuntimeError(
            f"Command {' '.join(cmd)} failed with exit code {result.returncode}: {result.stderr}"
        )

    return result
