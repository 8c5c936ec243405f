"""Async subprocess helper.

Runs git and test commands without blocking the event loop. Arguments are
passed as a list, never through a shell.

Example:
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
"""

import asyncio
import subprocess
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously and capture its output.

    Args:
        *args: Executable followed by its arguments.
        cwd: Working directory, or None for the current one.
        check: Raise ``CalledProcessError`` on a non-zero exit code.
        timeout: Seconds before the process is killed and
            ``TimeoutError`` raised. None waits indefinitely.
        env: Full environment for the child, or None to inherit.

    Returns:
        Tuple of (stdout, stderr, return_code), decoded as UTF-8 with
        replacement for invalid bytes.

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails.
        TimeoutError: If the timeout elapsed; the process has been killed.
        FileNotFoundError: If the executable does not exist.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, args, stdout, stderr)

    return stdout, stderr, process.returncode or 0
