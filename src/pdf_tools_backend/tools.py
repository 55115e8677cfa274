"""
Bounded-time execution of external programs.

Every external tool call in the service goes through ``ToolInvoker.run``. A
call runs once: there is no retry, and a timeout or non-zero exit surfaces as
``ToolFailure`` carrying the combined output for the operator log. Callers
translate the failure into a user-facing message and never forward the
captured output to the client.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional, Union

from .errors import ToolFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class ToolInvoker:
    """
    Runs external programs inside a job directory.

    Attributes:
        default_timeout: Wall-clock bound applied when a call passes no timeout
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.default_timeout = default_timeout

    def run(
        self,
        work_dir: Path,
        program: str,
        *args: Union[str, Path],
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run ``program`` with ``args`` using ``work_dir`` as working directory.

        Args:
            work_dir: Directory the process runs in
            program: Executable name or path
            *args: Arguments, converted to strings
            timeout: Seconds before the process is killed (default: ``default_timeout``)

        Returns:
            Combined stdout and stderr of a successful run

        Raises:
            ToolFailure: On non-zero exit, timeout, or when the program cannot be started
        """
        command = [program, *(str(arg) for arg in args)]
        limit = timeout if timeout is not None else self.default_timeout
        logger.debug(f"Running {command} in {work_dir} (timeout {limit}s)")

        try:
            completed = subprocess.run(
                command,
                cwd=str(work_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=limit,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            output = _decode(exc.output)
            logger.error(f"{command} timed out after {limit}s\nOutput: {output}")
            raise ToolFailure(command, output, timed_out=True) from exc
        except OSError as exc:
            logger.error(f"{command} could not be started: {exc}")
            raise ToolFailure(command, str(exc)) from exc

        output = _decode(completed.stdout)
        if completed.returncode != 0:
            logger.error(f"{command} failed with status {completed.returncode}\nOutput: {output}")
            raise ToolFailure(command, output, returncode=completed.returncode)
        return output


def _decode(raw: Union[bytes, str, None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return raw.decode("utf-8", errors="replace")
