"""Cancellation and subprocess helpers shared by the git and nix wrappers."""

import asyncio
import contextlib
import logging
import os
import subprocess
from collections.abc import Awaitable
from pathlib import Path
from typing import TypeVar

from .errors import AbortedError, CommandError
from .log import echo_command

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _get_clean_env() -> dict:
    """Get environment suitable for spawning nix and git commands.

    Removes TMPDIR to let nix/bash use the system default (/tmp).
    This avoids issues where TMPDIR points to a directory created by
    a parent nix-shell that may be cleaned up unexpectedly. Git is
    told never to prompt for credentials, since stdin is not a terminal.
    """
    env = os.environ.copy()
    env.pop('TMPDIR', None)
    env['GIT_TERMINAL_PROMPT'] = '0'
    return env


class CancelToken:
    """A one-way cancellation signal shared by every in-flight operation.

    Once cancelled it stays cancelled: guarded work fails with AbortedError
    and new work is refused.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info('cancellation requested')
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await work, aborting it as soon as the token is cancelled.

        Raises:
            AbortedError: the token was cancelled before or during the work
        """
        if self._event.is_set():
            # Close a never-started coroutine so it does not warn
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AbortedError()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AbortedError()

    async def sleep(self, delay: float) -> None:
        """Sleep, waking early with AbortedError on cancellation."""
        if delay > 0:
            await self.guard(asyncio.sleep(delay))
        else:
            self.raise_if_cancelled()


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def run_command(
    cmd: list[str],
    cancel: CancelToken,
    cwd: Path | None = None,
    timeout: float | None = None,
    verbose: bool = False,
) -> subprocess.CompletedProcess:
    """Run an external command under the cancellation token.

    Args:
        cmd: Command and arguments
        cancel: Token that aborts the command (the process is killed)
        cwd: Working directory
        timeout: Seconds before the process is killed
        verbose: Print the command to stderr

    Returns the completed process with decoded stdout/stderr; the caller
    checks the return code.

    Raises:
        AbortedError: the token was cancelled
        CommandError: the executable is missing or the timeout expired
    """
    cancel.raise_if_cancelled()
    if verbose:
        echo_command(cmd)
    logger.debug('running %s', ' '.join(cmd))

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_get_clean_env(),
        )
    except FileNotFoundError as e:
        raise CommandError(cmd, 127, f'{cmd[0]}: command not found') from e

    try:
        stdout, stderr = await cancel.guard(asyncio.wait_for(proc.communicate(), timeout))
    except asyncio.TimeoutError:
        await _kill(proc)
        raise CommandError(cmd, -1, f'timed out after {timeout:g}s') from None
    except BaseException:
        await _kill(proc)
        raise

    result = subprocess.CompletedProcess(
        cmd,
        proc.returncode,
        stdout.decode('utf-8', errors='replace'),
        stderr.decode('utf-8', errors='replace'),
    )
    if result.returncode != 0:
        logger.debug('%s exited with %d: %s', cmd[0], result.returncode, result.stderr.strip())
    return result
