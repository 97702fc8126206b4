"""
External command execution with cancellation support.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, IO, List, Optional


logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
TERMINATE_GRACE_PERIOD = 10


@dataclass
class CommandResult:
    """Outcome of a finished external command."""
    command: List[str]
    returncode: int
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, lines: int = 5) -> str:
        """Last lines of stderr, joined on one line for error messages."""
        if not self.stderr:
            return ''
        tail = [line.strip() for line in self.stderr.strip().splitlines()[-lines:]]
        return ' | '.join(line for line in tail if line)


def run_command(
    command: List[str],
    cancellation_check: Optional[Callable[[], None]] = None,
    stdout: Optional[IO] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None
) -> CommandResult:
    """
    Run an external command to completion.

    The child is polled so that a cancellation request can terminate it:
    when cancellation_check raises, the child gets SIGTERM, then SIGKILL
    after a grace period, and the exception propagates.

    Args:
        command: Command and arguments (never contains secrets)
        cancellation_check: Called between polls, raises to cancel
        stdout: File object receiving stdout (default: captured)
        env: Environment for the child process
        cwd: Working directory for the child process

    Returns:
        CommandResult with exit status and captured output

    Raises:
        OSError: If the command cannot be started
    """
    logger.debug("$ %s", " ".join(command))

    process = subprocess.Popen(
        command,
        stdout=stdout if stdout is not None else subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
        cwd=cwd,
        text=True,
        errors='replace'
    )

    try:
        while True:
            if cancellation_check:
                cancellation_check()
            try:
                out, err = process.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                continue
    except BaseException:
        _terminate(process)
        raise

    return CommandResult(command=list(command), returncode=process.returncode, stdout=out, stderr=err)


def _terminate(process: subprocess.Popen):
    """Stop a child process, escalating to SIGKILL if it ignores SIGTERM."""
    if process.poll() is not None:
        return

    logger.warning(f"Terminating running command: {process.args[0]}")
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_GRACE_PERIOD)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()
