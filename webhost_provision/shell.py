"""Command execution helpers."""

import logging
import os
import shutil
import subprocess
from typing import Callable, Dict, List, Optional

from webhost_provision.errors import ExecutionError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 300  # seconds

Runner = Callable[..., subprocess.CompletedProcess]


def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[float] = COMMAND_TIMEOUT,
    env: Optional[Dict[str, str]] = None,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Execute a system command with an explicit timeout.

    Args:
        cmd: Command and arguments
        check: Whether to raise on a non-zero exit status
        capture_output: Whether to capture stdout/stderr
        timeout: Seconds before the command is killed
        env: Extra environment variables merged over the current environment
        input: Text fed to the command's stdin

    Returns:
        subprocess.CompletedProcess object

    Raises:
        ExecutionError: If the command fails, times out or cannot be started
    """
    cmd_str = " ".join(cmd)
    logger.debug(f"Executing: {cmd_str}")

    run_env = os.environ.copy()
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            cmd,
            env=run_env,
            check=False,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
            input=input,
        )
    except subprocess.TimeoutExpired:
        raise ExecutionError(f"Command timed out after {timeout} seconds: {cmd_str}")
    except OSError as e:
        raise ExecutionError(f"Error executing command: {cmd_str}: {e}")

    if result.returncode != 0:
        error_msg = f"Command failed (code {result.returncode}): {cmd_str}"
        if result.stderr:
            logger.debug(f"Error: {result.stderr.strip()}")
        if check:
            if result.stderr:
                error_msg += f": {result.stderr.strip().splitlines()[-1]}"
            raise ExecutionError(
                error_msg,
                returncode=result.returncode,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
            )
        logger.debug(error_msg)
    return result


def command_exists(cmd: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(cmd) is not None
